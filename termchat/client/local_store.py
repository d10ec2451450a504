import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50

_ALNUM = string.ascii_lowercase + string.digits


def generate_conversation_id() -> str:
    suffix = "".join(random.choices(_ALNUM, k=7))
    return f"chat-{int(time.time() * 1000)}-{suffix}"


def make_title(text: str) -> str:
    text = text.strip()
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text or "New conversation"


class LocalConversationStore:
    """Client-side copies of finished conversations, one JSON file each."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _file(self, conversation_id: str) -> Path:
        return self.root / f"{conversation_id}.json"

    def load(self, conversation_id: str) -> Optional[dict]:
        path = self._file(conversation_id)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load local conversation %s", conversation_id)
        return None

    def save(self, conversation_id: str, messages: list[dict], model: str) -> dict:
        existing = self.load(conversation_id) or {}
        now = datetime.now(timezone.utc).isoformat()
        first_user = next((m["content"] for m in messages if m.get("role") == "user"), "")
        record = {
            "id": conversation_id,
            "title": existing.get("title") or make_title(first_user),
            "messages": messages,
            "model": model,
            "createdAt": existing.get("createdAt", now),
            "updatedAt": now,
        }
        self.root.mkdir(parents=True, exist_ok=True)
        self._file(conversation_id).write_text(
            json.dumps(record, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        return record

    def list_records(self) -> list[dict]:
        if not self.root.exists():
            return []
        records = []
        for path in self.root.glob("chat-*.json"):
            record = self.load(path.stem)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.get("updatedAt", ""), reverse=True)
        return records
