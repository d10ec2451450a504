import random
import re
import string
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CONVERSATION_PREFIX = "chat-"

_ALNUM = string.ascii_lowercase + string.digits
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _random_suffix(length: int) -> str:
    return "".join(random.choices(_ALNUM, k=length))


def new_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{_random_suffix(9)}"


def new_conversation_id() -> str:
    return f"{CONVERSATION_PREFIX}{int(time.time() * 1000)}-{_random_suffix(7)}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(_CamelModel):
    id: str = Field(default_factory=new_message_id)
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: str = Field(default_factory=utc_now)
    metadata: Optional[dict] = None


class ConversationMetadata(_CamelModel):
    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0

    @classmethod
    def from_messages(cls, messages: list[Message]) -> "ConversationMetadata":
        return cls(
            total_messages=len(messages),
            user_messages=sum(1 for m in messages if m.role == "user"),
            assistant_messages=sum(1 for m in messages if m.role == "assistant"),
        )


class Conversation(_CamelModel):
    id: str
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
    messages: list[Message] = []
    metadata: ConversationMetadata = ConversationMetadata()


class ConversationSummary(_CamelModel):
    """Index entry kept in conversations-index.json."""

    id: str = ""
    created_at: str = ""
    updated_at: str = ""
    message_count: int = 0
    last_message: str = ""  # first 100 chars of the newest message


class Insights(_CamelModel):
    total_conversations: int = 0
    total_messages: int = 0
    average_messages_per_conversation: float = 0
    peak_usage_hours: dict[str, int] = {}
    generated_at: str = Field(default_factory=utc_now)


def is_valid_conversation_id(conv_id: str) -> bool:
    """Ids are ``chat-`` prefixed and double as file names."""
    return (
        isinstance(conv_id, str)
        and conv_id.startswith(CONVERSATION_PREFIX)
        and bool(_SAFE_ID_RE.match(conv_id))
        and ".." not in conv_id
    )
