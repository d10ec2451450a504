import logging
import time
from contextlib import asynccontextmanager
from typing import Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from termchat.api.routes_chat import router as chat_router
from termchat.api.routes_conversation import router as conversation_router
from termchat.api.routes_health import APP_NAME, APP_VERSION, router as health_router
from termchat.api.routes_models import router as models_router
from termchat.config import AppConfig, configure_logging, get_config
from termchat.conversation.storage import ConversationStore
from termchat.errors import ChatError
from termchat.llm.base import LLMProvider
from termchat.llm.service import UnifiedChatService, build_providers
from termchat.middleware.rate_limiter import RateLimitMiddleware, RequestTracker
from termchat.middleware.request_logger import RequestLoggingMiddleware

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong"


@asynccontextmanager
async def lifespan(app):
    config: AppConfig = app.state.config
    logger.info(
        "termchat %s starting (%s), data in %s, default model %s",
        APP_VERSION,
        config.server.environment,
        app.state.store.root,
        config.chat.default_model,
    )
    yield
    logger.info("termchat shutting down")


def _error_body(exc: ChatError, production: bool) -> dict:
    message = exc.message
    if production and exc.status_code >= 500:
        message = GENERIC_ERROR
    return {"error": exc.error, "message": message}


def _register_error_handlers(app: FastAPI, config: AppConfig) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.error}: {exc.message}")
        return JSONResponse(_error_body(exc, config.is_production), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
        location = ".".join(str(p) for p in errors[0].get("loc", ())) if errors else ""
        message = f"{location}: {detail}" if location else detail
        return JSONResponse({"error": "Invalid request", "message": message}, status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            body = {
                "error": "Not found",
                "message": f"Route {request.method} {request.url.path} not found",
            }
        else:
            body = {"error": str(exc.detail), "message": str(exc.detail)}
        return JSONResponse(body, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = GENERIC_ERROR if config.is_production else str(exc)
        return JSONResponse(
            {"error": "Internal server error", "message": message}, status_code=500
        )


def create_app(
    config: Optional[AppConfig] = None,
    store: Optional[ConversationStore] = None,
    providers: Optional[Mapping[str, LLMProvider]] = None,
) -> FastAPI:
    config = config or get_config()

    app = FastAPI(title="termchat", version=APP_VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.store = store or ConversationStore(config.data_dir)
    app.state.chat_service = UnifiedChatService(providers or build_providers(config), config)
    app.state.started_at = time.monotonic()

    server = config.server
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        tracker=RequestTracker(server.rate_limit, server.rate_window),
        chat_tracker=RequestTracker(server.chat_rate_limit, server.chat_rate_window),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    _register_error_handlers(app, config)

    app.include_router(chat_router)
    app.include_router(models_router)
    app.include_router(conversation_router)
    app.include_router(health_router)

    @app.get("/")
    async def root():
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "description": "Terminal chat proxy for hosted LLM endpoints",
            "endpoints": {
                "chat": "/api/v1/chat",
                "models": "/api/v1/models",
                "conversations": "/api/v1/conversations",
                "health": "/api/v1/health",
            },
        }

    return app


configure_logging(get_config().server.log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(app, host=cfg.server.host, port=cfg.server.port)
