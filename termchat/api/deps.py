from fastapi import Request

from ..config import AppConfig
from ..conversation.models import is_valid_conversation_id
from ..conversation.storage import ConversationStore
from ..errors import InvalidRequest
from ..llm.service import UnifiedChatService


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_chat_service(request: Request) -> UnifiedChatService:
    return request.app.state.chat_service


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def require_message(message) -> str:
    if not isinstance(message, str) or not message.strip():
        raise InvalidRequest("Message is required and must be a non-empty string")
    return message


def require_conversation_id(conv_id) -> str:
    if not conv_id or not is_valid_conversation_id(conv_id):
        raise InvalidRequest(
            'Conversation ID must start with "chat-"',
            error="Invalid conversation ID",
        )
    return conv_id
