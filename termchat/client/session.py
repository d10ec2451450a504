import itertools
import logging
import time
from typing import Callable, Optional

from .api_client import ApiClient, ClientError, RequestRejected, ServerUnreachable, UpstreamFailure
from .consumer import (
    CHARS_PER_TICK,
    TICK_INTERVAL,
    ConsumerState,
    DisplayMessage,
    StreamConsumer,
)
from .local_store import LocalConversationStore, generate_conversation_id

logger = logging.getLogger(__name__)

STOP_NOTICE = "Response generation was stopped by user."

_ERROR_HINTS = {
    ServerUnreachable: "Check that the server is running and the URL is correct.",
    RequestRejected: "Check the selected model and the conversation settings.",
    UpstreamFailure: "The model provider failed to answer. Try again or pick another model.",
}


def format_error(exc: ClientError) -> str:
    hint = _ERROR_HINTS.get(type(exc), "")
    text = f"❌ **Error**: {exc.message}"
    return f"{text}\n\n{hint}" if hint else text


class ChatSession:
    """One terminal conversation: the visible transcript plus the turn in flight."""

    def __init__(
        self,
        api: ApiClient,
        model: Optional[str] = None,
        store: Optional[LocalConversationStore] = None,
        conversation_id: Optional[str] = None,
        on_update: Optional[Callable[[DisplayMessage], None]] = None,
        chars_per_tick: int = CHARS_PER_TICK,
        tick_interval: float = TICK_INTERVAL,
    ):
        self.api = api
        self.model = model
        self.store = store
        self.conversation_id = conversation_id or generate_conversation_id()
        self.on_update = on_update
        self.chars_per_tick = chars_per_tick
        self.tick_interval = tick_interval
        self.messages: list[DisplayMessage] = []
        self._consumer: Optional[StreamConsumer] = None
        self._dropped: set[str] = set()
        self._ids = itertools.count(1)

    @property
    def busy(self) -> bool:
        return self._consumer is not None and not self._consumer.done

    def _notify(self, message: DisplayMessage) -> None:
        if self.on_update is not None:
            self.on_update(message)

    def add_message(self, role: str, content: str = "", is_typing: bool = False) -> DisplayMessage:
        message = DisplayMessage(
            role=role,
            content=content,
            id=f"{role}-{int(time.time() * 1000)}-{next(self._ids)}",
            is_typing=is_typing,
        )
        self.messages.append(message)
        self._notify(message)
        return message

    def history(self) -> list[dict]:
        """Prior turns to send upstream; stopped and failed replies are left out."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m.role != "system" and m.content and m.id not in self._dropped
        ]

    async def submit(self, text: str) -> Optional[DisplayMessage]:
        """Send one user turn and stream the reply into the transcript."""
        text = text.strip()
        if not text:
            return None
        if self.busy:
            self._abort_current()

        history = self.history()
        self.add_message("user", text)
        reply = self.add_message("assistant", is_typing=True)
        consumer = StreamConsumer(
            reply,
            on_update=self.on_update,
            chars_per_tick=self.chars_per_tick,
            tick_interval=self.tick_interval,
        )
        self._consumer = consumer

        try:
            async with self.api.open_chat_stream(
                text, self.conversation_id, model=self.model, history=history
            ) as chat_reply:
                if chat_reply.is_stream:
                    state = await consumer.run(chat_reply.chunks)
                else:
                    state = await consumer.run_text(chat_reply.text)
        except ClientError as e:
            if consumer.state is ConsumerState.ABORTED:
                self._dropped.add(reply.id)
                return reply
            logger.error("Chat request failed: %s", e.message)
            self._show_error(reply, e)
            return reply
        finally:
            if self._consumer is consumer:
                self._consumer = None

        if state is ConsumerState.FAILED:
            self._show_error(reply, UpstreamFailure(consumer.error or "Stream error occurred"))
        elif state is ConsumerState.ABORTED:
            self._dropped.add(reply.id)
        elif state is ConsumerState.RENDERED:
            self.save()
        return reply

    def _show_error(self, reply: DisplayMessage, exc: ClientError) -> None:
        reply.content = format_error(exc)
        reply.is_typing = False
        self._dropped.add(reply.id)
        self._notify(reply)

    def _abort_current(self) -> bool:
        consumer = self._consumer
        if consumer is None or not consumer.abort():
            return False
        self._dropped.add(consumer.message.id)
        return True

    def stop(self) -> bool:
        """Abort the turn in flight and note it in the transcript."""
        if not self._abort_current():
            return False
        self.add_message("system", STOP_NOTICE)
        return True

    def new_chat(self) -> None:
        self._abort_current()
        self._consumer = None
        self.messages = []
        self._dropped.clear()
        self.conversation_id = generate_conversation_id()

    def load(self, conversation_id: str) -> bool:
        if self.store is None:
            return False
        record = self.store.load(conversation_id)
        if record is None:
            return False
        self.new_chat()
        self.conversation_id = conversation_id
        self.model = record.get("model") or self.model
        self.messages = [
            DisplayMessage(
                role=m.get("role", "assistant"),
                content=m.get("content", ""),
                id=m.get("id", ""),
                timestamp=m.get("timestamp", ""),
            )
            for m in record.get("messages", [])
        ]
        return True

    def save(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(
                self.conversation_id,
                [m.to_dict() for m in self.messages],
                self.model or "",
            )
        except OSError as e:
            logger.warning("Failed to save conversation locally: %s", e)
