import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

from ..errors import InvalidModel

logger = logging.getLogger(__name__)


class UpstreamStream:
    """An open upstream SSE response: raw bytes in, idempotent close."""

    def __init__(self, response: httpx.Response, client: httpx.AsyncClient):
        self._response = response
        self._client = client
        self._closed = False

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_bytes():
            yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


@dataclass
class ChatResult:
    model: str
    provider: str
    content: Optional[str] = None
    stream: Optional[UpstreamStream] = None
    usage: Optional[dict] = None
    duration: int = 0  # ms

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class LLMProvider(ABC):
    """Abstract base class for upstream chat providers."""

    name: str
    models: frozenset[str]

    def __init__(self, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout = timeout
        self._transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport, **kwargs)

    def validate_model(self, model: str) -> None:
        if model not in self.models:
            raise InvalidModel(
                f"Model '{model}' is not served by provider '{self.name}'"
            )

    @abstractmethod
    async def chat(
        self,
        messages: list[dict],
        model: str,
        temperature: float,
        stream: bool = False,
    ) -> ChatResult:
        """Send prepared messages; return text or an open stream handle."""
        ...
