import logging
from collections import Counter
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidModel, ProviderError, UpstreamUnavailable
from ..llm import registry
from .deps import get_chat_service, get_store, require_conversation_id, require_message
from .routes_chat import HistoryItem, chat_failure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/models", tags=["models"])

TEST_PROMPT = "Hello! Please respond with a short greeting."


class ModelChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    history: list[HistoryItem] = []
    temperature: Optional[float] = None


class ModelTestRequest(BaseModel):
    message: str = TEST_PROMPT


def _descriptor(model_id: str) -> registry.ModelDescriptor:
    descriptor = registry.get_model_info(model_id)
    if descriptor is None:
        raise InvalidModel(f"Model '{model_id}' does not exist")
    return descriptor


def _grouped(key: str) -> dict[str, list[dict]]:
    groups: dict[str, list[dict]] = {}
    for m in registry.MODEL_CATALOG:
        groups.setdefault(getattr(m, key), []).append(m.to_dict())
    return groups


@router.get("")
async def list_models(request: Request, provider: Optional[str] = None, category: Optional[str] = None):
    models = get_chat_service(request).list_models(provider=provider, category=category)
    return {
        "success": True,
        "total": len(models),
        "default": get_chat_service(request).default_model,
        "models": [m.to_dict() for m in models],
        "categories": dict(Counter(m.category for m in models)),
    }


@router.get("/providers")
async def list_providers():
    return {"success": True, "providers": _grouped("provider")}


@router.get("/categories")
async def list_categories():
    return {"success": True, "categories": _grouped("category")}


@router.get("/{model_id}")
async def get_model(model_id: str):
    return {"success": True, "model": _descriptor(model_id).to_dict()}


@router.post("/{model_id}/chat")
async def chat_with_model(model_id: str, req: ModelChatRequest, request: Request):
    """Non-streaming chat pinned to one model; both turns are persisted."""
    descriptor = _descriptor(model_id)
    message = require_message(req.message)
    conversation_id = require_conversation_id(req.conversation_id)
    store = get_store(request)

    await store.append_message(conversation_id, "user", message)
    try:
        result = await get_chat_service(request).chat(
            message,
            model=model_id,
            history=[h.model_dump() for h in req.history],
            temperature=req.temperature,
            stream=False,
        )
    except (UpstreamUnavailable, ProviderError) as e:
        logger.error(f"[Models] {model_id} chat failed: {e}")
        return chat_failure(request, conversation_id, e)

    await store.append_message(
        conversation_id,
        "assistant",
        result.content,
        metadata={"model": model_id, "provider": descriptor.provider},
    )
    return {
        "success": True,
        "response": result.content,
        "conversationId": conversation_id,
        "model": result.model,
        "provider": result.provider,
        "usage": result.usage,
        "duration": result.duration,
    }


@router.post("/{model_id}/test")
async def test_model(model_id: str, request: Request, req: Optional[ModelTestRequest] = None):
    """Send a probe prompt without touching any conversation."""
    _descriptor(model_id)
    req = req or ModelTestRequest()
    result = await get_chat_service(request).chat(req.message, model=model_id, stream=False)
    return {
        "success": True,
        "model": result.model,
        "provider": result.provider,
        "response": result.content,
        "duration": result.duration,
    }
