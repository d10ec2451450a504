from typing import Optional

from fastapi import APIRouter, Query, Request

from .deps import get_app_config, get_store, require_conversation_id

router = APIRouter(prefix="/api/v1/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(request: Request):
    summaries = await get_store(request).list_conversations()
    return {
        "success": True,
        "total": len(summaries),
        "conversations": [s.model_dump(by_alias=True) for s in summaries],
    }


@router.get("/analytics/insights")
async def get_insights(request: Request):
    insights = await get_store(request).compute_insights()
    return {"success": True, "insights": insights.model_dump(by_alias=True)}


@router.post("/cleanup")
async def cleanup_conversations(
    request: Request,
    retention_days: Optional[int] = Query(None, alias="retentionDays", ge=0),
):
    if retention_days is None:
        retention_days = get_app_config(request).storage.retention_days
    deleted = await get_store(request).cleanup_expired(retention_days)
    return {
        "success": True,
        "message": f"Cleaned up {deleted} conversations older than {retention_days} days",
        "deletedCount": deleted,
    }


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    conv = await get_store(request).get_or_create(require_conversation_id(conversation_id))
    return {"success": True, "conversation": conv.model_dump(by_alias=True)}


@router.get("/{conversation_id}/history")
async def get_history(conversation_id: str, request: Request, limit: int = Query(50, ge=1)):
    messages = await get_store(request).get_history(
        require_conversation_id(conversation_id), limit
    )
    return {
        "success": True,
        "conversationId": conversation_id,
        "count": len(messages),
        "messages": [m.model_dump(by_alias=True) for m in messages],
    }


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    deleted = await get_store(request).delete(require_conversation_id(conversation_id))
    return {
        "success": True,
        "deleted": deleted,
        "message": "Conversation deleted" if deleted else "Conversation not found",
    }
