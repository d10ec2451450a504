import logging
from datetime import datetime, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are {name}, a helpful AI assistant in a terminal chat.

Current date and time: {now}

Guidelines:
- Answer clearly and concisely.
- Use Markdown formatting; put code in fenced blocks with a language tag.
- Say so when you are not sure about something.
- Reply in the language the user writes in."""


def _now(tz_name: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(tz_name))
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone %s, falling back to UTC", tz_name)
        return datetime.now(timezone.utc)


def build_system_prompt(assistant_name: str, tz_name: str) -> str:
    now = _now(tz_name).strftime("%A, %d %B %Y %H:%M:%S %Z")
    return SYSTEM_PROMPT_TEMPLATE.format(name=assistant_name, now=now)


def trim_history(history: Optional[Iterable[dict]], limit: int = 20) -> list[dict]:
    """Keep the last *limit* entries that carry both a role and content."""
    valid = [
        {"role": h["role"], "content": h["content"]}
        for h in history or []
        if h.get("role") and h.get("content")
    ]
    return valid[-limit:] if limit > 0 else []


def prepare_messages(
    message: str,
    history: Optional[Iterable[dict]],
    assistant_name: str,
    tz_name: str,
    history_limit: int = 20,
) -> list[dict]:
    """System prompt, trimmed history, then the new user turn."""
    return [
        {"role": "system", "content": build_system_prompt(assistant_name, tz_name)},
        *trim_history(history, history_limit),
        {"role": "user", "content": message},
    ]


def flatten_messages(messages: list[dict]) -> str:
    """Render a message list as one labelled transcript for single-prompt upstreams."""
    labels = {"system": "System", "user": "User", "assistant": "Assistant"}
    return "\n\n".join(
        f"{labels.get(m['role'], m['role'].capitalize())}: {m['content']}"
        for m in messages
    )
