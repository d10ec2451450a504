"""Relay an upstream SSE completion stream to one downstream client.

A producer task reads the upstream, keeps the content-bearing records and
queues them for the response generator. The producer owns the upstream: if
the client goes away the response ends, but the producer keeps draining and
still persists the assistant message when the upstream finishes.
"""

import asyncio
import enum
import json
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..llm.extractors import extract_delta
from .sse import DONE, DONE_FRAME, LineBuffer, error_frame, format_data

logger = logging.getLogger(__name__)

# Producers outlive their response when the client disconnects
_pending: set[asyncio.Task] = set()


class RelayState(str, enum.Enum):
    OPEN = "open"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    ERRORED = "errored"
    CLIENT_ABORTED = "client_aborted"


class StreamRelay:
    def __init__(
        self,
        stream,
        on_complete: Callable[[str], Awaitable[None]],
        conversation_id: str = "",
        model: str = "",
    ):
        self._stream = stream
        self._on_complete = on_complete
        self.conversation_id = conversation_id
        self.model = model
        self.state = RelayState.OPEN
        self.chunk_count = 0
        self._parts: list[str] = []
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._closed = False
        self._task: Optional[asyncio.Task] = None
        self._started = time.monotonic()

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[str]:
        """SSE frames for the response body; ends when the relay closes."""
        self._task = asyncio.create_task(self._pump())
        _pending.add(self._task)
        self._task.add_done_callback(_pending.discard)
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    return
                yield frame
        finally:
            if not self._closed:
                self.client_disconnected()

    async def join(self) -> None:
        """Wait until the upstream has been fully drained."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def client_disconnected(self) -> None:
        if self.state in (RelayState.OPEN, RelayState.RECEIVING):
            self.state = RelayState.CLIENT_ABORTED
            logger.info(
                "Client left conversation %s mid-stream, draining upstream",
                self.conversation_id,
            )
        self._close()

    def _emit(self, frame: str) -> None:
        if self._closed:
            return
        self._queue.put_nowait(frame)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def _pump(self) -> None:
        buffer = LineBuffer()
        try:
            async for chunk in self._stream.aiter_bytes():
                if self.state is RelayState.OPEN:
                    self.state = RelayState.RECEIVING
                for line in buffer.feed(chunk):
                    if await self._handle_line(line):
                        return
            for line in buffer.flush():
                if await self._handle_line(line):
                    return
            # Upstream closed cleanly without the sentinel
            self._emit(DONE_FRAME)
            await self._finish()
        except Exception as e:
            logger.error(
                "Upstream stream failed for %s after %d chunks: %s",
                self.conversation_id,
                self.chunk_count,
                e,
            )
            if self.state is not RelayState.CLIENT_ABORTED:
                self.state = RelayState.ERRORED
            self._emit(error_frame())
        finally:
            try:
                await self._stream.aclose()
            finally:
                self._close()

    async def _handle_line(self, line: str) -> bool:
        """Process one upstream line; True once the stream is finished."""
        if not line.startswith("data:"):
            return False
        payload = line[len("data:"):].strip()
        if payload == DONE:
            self._emit(DONE_FRAME)
            await self._finish()
            return True
        try:
            record = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Dropping unparseable record: %s", payload[:80])
            return False
        text = extract_delta(record)
        if text:
            self._parts.append(text)
            self.chunk_count += 1
            self._emit(format_data(payload))
        return False

    async def _finish(self) -> None:
        if self.state is not RelayState.CLIENT_ABORTED:
            self.state = RelayState.COMPLETED
        content = self.content
        logger.info(
            "Stream finished for %s: model=%s chunks=%d length=%d duration=%dms",
            self.conversation_id,
            self.model,
            self.chunk_count,
            len(content),
            int((time.monotonic() - self._started) * 1000),
        )
        if not content:
            logger.warning("Empty completion for %s, nothing persisted", self.conversation_id)
            return
        await self._on_complete(content)
