import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ProviderError, UnknownModel, UpstreamUnavailable
from ..llm import registry
from ..streaming.relay import StreamRelay
from ..streaming.sse import SSE_HEADERS
from .deps import (
    get_app_config,
    get_chat_service,
    get_store,
    require_conversation_id,
    require_message,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


class HistoryItem(BaseModel):
    role: str = ""
    content: str = ""


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    model: Optional[str] = None
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    history: list[HistoryItem] = []
    temperature: Optional[float] = None
    stream: bool = True


def chat_failure(request: Request, conversation_id: str, exc: Exception) -> JSONResponse:
    body = {
        "error": "Internal server error",
        "message": "Failed to process chat request",
        "conversationId": conversation_id,
    }
    if not get_app_config(request).is_production:
        body["detail"] = str(exc)
    return JSONResponse(body, status_code=500)


@router.post("")
async def chat(req: ChatRequest, request: Request):
    message = require_message(req.message)
    conversation_id = require_conversation_id(req.conversation_id)
    service = get_chat_service(request)
    store = get_store(request)

    model = req.model or service.default_model
    if not registry.is_valid_model(model):
        raise UnknownModel(f"Model '{model}' is not available")

    await store.append_message(conversation_id, "user", message)
    history = [h.model_dump() for h in req.history]

    try:
        result = await service.chat(
            message,
            model=model,
            history=history,
            temperature=req.temperature,
            stream=req.stream,
        )
    except (UpstreamUnavailable, ProviderError) as e:
        logger.error(f"[Chat] {conversation_id} ({model}) failed: {e}")
        return chat_failure(request, conversation_id, e)

    if result.is_stream:
        async def persist(content: str) -> None:
            await store.append_message(conversation_id, "assistant", content)

        relay = StreamRelay(result.stream, persist, conversation_id, result.model)
        return StreamingResponse(
            relay.events(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    await store.append_message(conversation_id, "assistant", result.content)
    logger.info(f"[Chat] {conversation_id} ({result.model}) answered in {result.duration}ms")
    return {
        "success": True,
        "response": result.content,
        "conversationId": conversation_id,
        "model": result.model,
        "provider": result.provider,
        "usage": result.usage,
        "duration": result.duration,
    }


@router.get("/models")
async def chat_models(request: Request):
    service = get_chat_service(request)
    return {
        "success": True,
        "models": [m.to_dict() for m in service.list_models(provider=registry.LOCAL)],
        "default": service.default_model,
    }
