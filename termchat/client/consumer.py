"""Client-side reassembly of a streamed chat response.

The consumer reads SSE bytes, rebuilds the assistant text, and once the
stream has ended reveals it a few characters per tick. Abort stops both the
read loop and the reveal immediately; each turn gets its own consumer so a
late tick from an old turn can never touch a newer message.
"""

import asyncio
import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Coroutine, Optional

from ..llm.extractors import extract_delta
from ..streaming.sse import DONE, LineBuffer

logger = logging.getLogger(__name__)

CHARS_PER_TICK = 10
TICK_INTERVAL = 0.012  # seconds


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DisplayMessage:
    role: str
    content: str = ""
    id: str = ""
    timestamp: str = field(default_factory=_now)
    is_typing: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


class ConsumerState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TYPING = "typing"
    RENDERED = "rendered"
    ABORTED = "aborted"
    FAILED = "failed"


_FINAL_STATES = (ConsumerState.RENDERED, ConsumerState.ABORTED, ConsumerState.FAILED)


class LineKind(str, enum.Enum):
    SKIP = "skip"
    DONE = "done"
    CONTENT = "content"
    ERROR = "error"


def _classify_json(data) -> tuple[LineKind, str]:
    if isinstance(data, dict) and data.get("error") and not data.get("choices"):
        error = data["error"]
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return LineKind.ERROR, str(error)
    text = extract_delta(data)
    if text:
        return LineKind.CONTENT, text
    return LineKind.SKIP, ""


def classify_line(line: str) -> tuple[LineKind, str]:
    """Decide what one received line contributes to the message."""
    line = line.strip()
    if not line or line.startswith(":"):
        return LineKind.SKIP, ""
    if line.startswith("data:"):
        payload = line[len("data:"):].strip()
        if payload == DONE:
            return LineKind.DONE, ""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping unparseable stream record: %s", payload[:80])
            return LineKind.SKIP, ""
        return _classify_json(data)
    if line.startswith("{") or line.startswith("["):
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return LineKind.CONTENT, line + "\n"
        return _classify_json(data)
    return LineKind.CONTENT, line + "\n"


class StreamConsumer:
    def __init__(
        self,
        message: DisplayMessage,
        on_update: Optional[Callable[[DisplayMessage], None]] = None,
        chars_per_tick: int = CHARS_PER_TICK,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.message = message
        self.on_update = on_update
        self.chars_per_tick = chars_per_tick
        self.tick_interval = tick_interval
        self.state = ConsumerState.IDLE
        self.content = ""
        self.error: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.message)

    @property
    def done(self) -> bool:
        return self.state in _FINAL_STATES

    async def run(self, chunks: AsyncIterator[bytes]) -> ConsumerState:
        """Consume the whole stream and reveal it; returns the final state."""
        return await self._drive(self._run(chunks))

    async def run_text(self, text: str) -> ConsumerState:
        """Reveal an already complete reply the same way as a streamed one."""
        return await self._drive(self._run_text(text))

    async def _drive(self, coro: Coroutine[Any, Any, ConsumerState]) -> ConsumerState:
        if self.state is not ConsumerState.IDLE:
            coro.close()
            return self.state
        self._task = asyncio.create_task(coro)
        try:
            return await self._task
        except asyncio.CancelledError:
            if self.state is ConsumerState.ABORTED:
                return self.state
            self._task.cancel()
            raise

    def abort(self) -> bool:
        """Stop reading and revealing; False if the turn already finished."""
        if self.done:
            return False
        self.state = ConsumerState.ABORTED
        self.message.is_typing = False
        self._notify()
        if self._task is not None:
            self._task.cancel()
        logger.info("Response aborted after %d chars", len(self.content))
        return True

    async def _run(self, chunks: AsyncIterator[bytes]) -> ConsumerState:
        self.state = ConsumerState.STREAMING
        self.message.is_typing = True
        buffer = LineBuffer()
        try:
            async for chunk in chunks:
                for line in buffer.feed(chunk):
                    if not self._accept(line):
                        return self.state
            for line in buffer.flush():
                if not self._accept(line):
                    return self.state
        except Exception as e:
            logger.error("Stream read failed: %s", e)
            return self._fail(str(e) or e.__class__.__name__)
        return await self._render()

    async def _run_text(self, text: str) -> ConsumerState:
        self.state = ConsumerState.STREAMING
        self.message.is_typing = True
        self.content = text
        return await self._render()

    async def _render(self) -> ConsumerState:
        if not self.content:
            self.message.is_typing = False
            self.state = ConsumerState.RENDERED
            self._notify()
            return self.state
        await self._reveal()
        return self.state

    def _accept(self, line: str) -> bool:
        kind, text = classify_line(line)
        if kind is LineKind.CONTENT:
            self.content += text
        elif kind is LineKind.ERROR:
            self._fail(text)
            return False
        return True

    def _fail(self, error: str) -> ConsumerState:
        self.error = error
        self.state = ConsumerState.FAILED
        self.message.is_typing = False
        return self.state

    async def _reveal(self) -> None:
        self.state = ConsumerState.TYPING
        shown = 0
        total = len(self.content)
        while shown < total:
            await asyncio.sleep(self.tick_interval)
            shown = min(total, shown + self.chars_per_tick)
            self.message.content = self.content[:shown]
            self._notify()
        self.message.content = self.content
        self.message.is_typing = False
        self.state = ConsumerState.RENDERED
        self._notify()
