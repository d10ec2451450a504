"""File-backed conversation store.

Layout under the data root::

    conversations/<id>.json      full transcript
    conversations-index.json     {"conversations": {id: summary}}
    insights.json                last computed usage insights

Blocking file I/O runs in worker threads. Appends to one conversation are
serialised by a per-id lock; index read-modify-write cycles share one lock.
Unreadable files are logged and treated as missing; failed writes raise
StorageFailure.
"""

import asyncio
import json
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..errors import InvalidRequest, StorageFailure
from .models import (
    Conversation,
    ConversationMetadata,
    ConversationSummary,
    Insights,
    Message,
    is_valid_conversation_id,
    utc_now,
)

logger = logging.getLogger(__name__)

LAST_MESSAGE_PREVIEW = 100


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _next_updated_at(previous: str) -> str:
    """Now, unless the clock went backwards since the last save."""
    now = utc_now()
    prev = _parse_ts(previous)
    if prev is not None and prev > _parse_ts(now):
        return previous
    return now


def _dump(data: dict) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class ConversationStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self._conv_dir = self.root / "conversations"
        self._index_file = self.root / "conversations-index.json"
        self._insights_file = self.root / "insights.json"
        self._locks: dict[str, asyncio.Lock] = {}
        self._index_lock = asyncio.Lock()

    def _lock_for(self, conv_id: str) -> asyncio.Lock:
        lock = self._locks.get(conv_id)
        if lock is None:
            lock = self._locks[conv_id] = asyncio.Lock()
        return lock

    def _conv_file(self, conv_id: str) -> Path:
        if not is_valid_conversation_id(conv_id):
            raise InvalidRequest(f"Invalid conversation id: {conv_id!r}")
        return self._conv_dir / f"{conv_id}.json"

    # ---- Sync file helpers (run via asyncio.to_thread) ----

    def _ensure_dirs(self) -> None:
        try:
            self._conv_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create {self._conv_dir}: {e}") from e

    def _read_conversation(self, path: Path) -> Optional[Conversation]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Conversation.model_validate(data)
        except (json.JSONDecodeError, OSError, ValueError):
            logger.error("Failed to load conversation %s", path.name)
        return None

    def _write_conversation(self, conv: Conversation) -> None:
        self._ensure_dirs()
        try:
            self._conv_file(conv.id).write_text(
                _dump(conv.model_dump(by_alias=True)), encoding="utf-8"
            )
        except OSError as e:
            raise StorageFailure(f"Failed to save conversation {conv.id}: {e}") from e

    def _read_index(self) -> dict[str, dict]:
        if self._index_file.exists():
            try:
                data = json.loads(self._index_file.read_text(encoding="utf-8"))
                entries = data.get("conversations", {})
                if isinstance(entries, dict):
                    return entries
                logger.warning("Conversations index has unexpected shape")
            except (json.JSONDecodeError, OSError, AttributeError):
                logger.warning("Failed to load conversations index")
        return {}

    def _write_index(self, entries: dict[str, dict]) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._index_file.write_text(
                _dump({"conversations": entries}), encoding="utf-8"
            )
        except OSError as e:
            raise StorageFailure(f"Failed to save conversations index: {e}") from e

    def _update_index_entry(self, conv: Conversation) -> None:
        entries = self._read_index()
        last = conv.messages[-1].content[:LAST_MESSAGE_PREVIEW] if conv.messages else ""
        summary = ConversationSummary(
            id=conv.id,
            created_at=conv.created_at,
            updated_at=conv.updated_at,
            message_count=len(conv.messages),
            last_message=last,
        )
        entries[conv.id] = summary.model_dump(by_alias=True, exclude={"id"})
        self._write_index(entries)

    def _remove_index_entries(self, conv_ids: list[str]) -> None:
        entries = self._read_index()
        changed = False
        for conv_id in conv_ids:
            if entries.pop(conv_id, None) is not None:
                changed = True
        if changed:
            self._write_index(entries)

    def _conversation_files(self) -> list[Path]:
        if not self._conv_dir.exists():
            return []
        return sorted(self._conv_dir.glob("*.json"))

    # ---- Async API ----

    async def _save(self, conv: Conversation) -> None:
        conv.metadata = ConversationMetadata.from_messages(conv.messages)
        conv.updated_at = _next_updated_at(conv.updated_at)
        await asyncio.to_thread(self._write_conversation, conv)
        async with self._index_lock:
            await asyncio.to_thread(self._update_index_entry, conv)

    async def _load_or_create(self, conv_id: str) -> Conversation:
        path = self._conv_file(conv_id)
        conv = await asyncio.to_thread(self._read_conversation, path)
        if conv is None:
            conv = Conversation(id=conv_id)
            await self._save(conv)
            logger.info("Created conversation %s", conv_id)
        return conv

    async def get(self, conv_id: str) -> Optional[Conversation]:
        """Load a conversation without creating it."""
        path = self._conv_file(conv_id)
        async with self._lock_for(conv_id):
            return await asyncio.to_thread(self._read_conversation, path)

    async def get_or_create(self, conv_id: str) -> Conversation:
        async with self._lock_for(conv_id):
            return await self._load_or_create(conv_id)

    async def append_message(
        self,
        conv_id: str,
        role: str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> Message:
        async with self._lock_for(conv_id):
            conv = await self._load_or_create(conv_id)
            message = Message(role=role, content=content, metadata=metadata)
            conv.messages.append(message)
            await self._save(conv)
        logger.debug("Appended %s message to %s", role, conv_id)
        return message

    async def list_conversations(self) -> list[ConversationSummary]:
        """All index entries, most recently updated first."""
        async with self._index_lock:
            entries = await asyncio.to_thread(self._read_index)
        summaries = []
        for conv_id, entry in entries.items():
            try:
                summaries.append(ConversationSummary.model_validate({**entry, "id": conv_id}))
            except ValueError:
                logger.warning("Skipping malformed index entry %s", conv_id)
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    async def get_history(self, conv_id: str, limit: int = 50) -> list[Message]:
        """The last *limit* messages, oldest first."""
        conv = await self.get(conv_id)
        if conv is None or limit <= 0:
            return []
        return conv.messages[-limit:]

    async def delete(self, conv_id: str) -> bool:
        path = self._conv_file(conv_id)
        async with self._lock_for(conv_id):
            existed = path.exists()
            if existed:
                try:
                    await asyncio.to_thread(path.unlink)
                except FileNotFoundError:
                    existed = False
                except OSError as e:
                    raise StorageFailure(f"Failed to delete {conv_id}: {e}") from e
            async with self._index_lock:
                await asyncio.to_thread(self._remove_index_entries, [conv_id])
        self._locks.pop(conv_id, None)
        if existed:
            logger.info("Deleted conversation %s", conv_id)
        return existed

    async def cleanup_expired(self, retention_days: int) -> int:
        """Delete conversations not updated within *retention_days*."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        async with self._index_lock:
            entries = await asyncio.to_thread(self._read_index)
        files = await asyncio.to_thread(self._conversation_files)
        candidates = set(entries) | {p.stem for p in files}

        deleted: list[str] = []
        for conv_id in sorted(candidates):
            if not is_valid_conversation_id(conv_id):
                continue
            path = self._conv_file(conv_id)
            async with self._lock_for(conv_id):
                conv = await asyncio.to_thread(self._read_conversation, path)
                # Index entry is the fallback for missing or unreadable transcripts
                if conv is not None:
                    updated = _parse_ts(conv.updated_at)
                else:
                    entry = entries.get(conv_id)
                    updated = _parse_ts(entry.get("updatedAt")) if isinstance(entry, dict) else None
                if updated is None or updated >= cutoff:
                    continue
                try:
                    await asyncio.to_thread(path.unlink, missing_ok=True)
                except OSError as e:
                    raise StorageFailure(f"Failed to delete {conv_id}: {e}") from e
                deleted.append(conv_id)
        if deleted:
            async with self._index_lock:
                await asyncio.to_thread(self._remove_index_entries, deleted)
            for conv_id in deleted:
                self._locks.pop(conv_id, None)
        logger.info(
            "Cleanup removed %d conversations older than %d days", len(deleted), retention_days
        )
        return len(deleted)

    def _collect_insights(self) -> Insights:
        total_conversations = 0
        total_messages = 0
        hours: Counter = Counter()
        for path in self._conversation_files():
            conv = self._read_conversation(path)
            if conv is None:
                continue
            total_conversations += 1
            total_messages += len(conv.messages)
            created = _parse_ts(conv.created_at)
            if created is not None:
                hours[str(created.astimezone(timezone.utc).hour)] += 1
        average = round(total_messages / total_conversations, 2) if total_conversations else 0
        return Insights(
            total_conversations=total_conversations,
            total_messages=total_messages,
            average_messages_per_conversation=average,
            peak_usage_hours=dict(sorted(hours.items(), key=lambda kv: int(kv[0]))),
        )

    def _write_insights(self, insights: Insights) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self._insights_file.write_text(
                _dump(insights.model_dump(by_alias=True)), encoding="utf-8"
            )
        except OSError as e:
            raise StorageFailure(f"Failed to save insights: {e}") from e

    async def compute_insights(self) -> Insights:
        insights = await asyncio.to_thread(self._collect_insights)
        await asyncio.to_thread(self._write_insights, insights)
        logger.info(
            "Insights: %d conversations, %d messages",
            insights.total_conversations,
            insights.total_messages,
        )
        return insights
