import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3001"
DEFAULT_TIMEOUT = 30.0
STREAM_TIMEOUT = 60.0
HEALTH_TIMEOUT = 5.0


class ClientError(Exception):
    """Base class for errors talking to the chat server."""

    kind = "error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ServerUnreachable(ClientError):
    """The server could not be reached at all."""

    kind = "unreachable"


class RequestRejected(ClientError):
    """The server refused the request (bad model, bad id, rate limit, ...)."""

    kind = "rejected"


class UpstreamFailure(ClientError):
    """The server was reached but the provider behind it failed."""

    kind = "upstream"


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}: {resp.reason_phrase}"
    if isinstance(data, dict):
        return data.get("message") or data.get("error") or f"HTTP {resp.status_code}"
    return f"HTTP {resp.status_code}"


@dataclass
class ChatReply:
    """A streamed reply body, or the full text of a non-streamed one."""

    chunks: Optional[AsyncIterator[bytes]] = None
    text: str = ""

    @property
    def is_stream(self) -> bool:
        return self.chunks is not None


def _response_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        raise UpstreamFailure("Server returned an unreadable response", resp.status_code)
    if not isinstance(data, dict) or not isinstance(data.get("response"), str):
        raise UpstreamFailure("Server response did not contain a reply", resp.status_code)
    return data["response"]


def raise_for_response(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    message = _error_message(resp)
    if resp.status_code < 500:
        raise RequestRejected(message, resp.status_code)
    raise UpstreamFailure(message, resp.status_code)


class ApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    def _unreachable(self, e: Exception) -> ServerUnreachable:
        logger.debug("Request to %s failed: %s", self.base_url, e)
        return ServerUnreachable(
            "Cannot connect to backend server. "
            f"Please ensure the backend is running on {self.base_url}"
        )

    async def _request(self, method: str, path: str, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> dict:
        try:
            async with self._client(timeout) as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise self._unreachable(e) from e
        raise_for_response(resp)
        return resp.json()

    @asynccontextmanager
    async def open_chat_stream(
        self,
        message: str,
        conversation_id: str,
        model: Optional[str] = None,
        history: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[ChatReply]:
        """Yield the reply to a chat request that asks for streaming.

        Models that cannot stream are answered with a JSON body instead; the
        reply then carries the complete text rather than a byte stream.
        """
        payload = {
            "message": message,
            "conversationId": conversation_id,
            "model": model,
            "history": history or [],
            "temperature": temperature,
            "stream": True,
        }
        async with self._client(STREAM_TIMEOUT) as client:
            try:
                async with client.stream("POST", "/api/v1/chat", json=payload) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise_for_response(resp)
                    if resp.headers.get("content-type", "").startswith("application/json"):
                        await resp.aread()
                        yield ChatReply(text=_response_text(resp))
                    else:
                        yield ChatReply(chunks=resp.aiter_bytes())
            except httpx.TransportError as e:
                raise self._unreachable(e) from e

    async def get_models(self) -> dict:
        return await self._request("GET", "/api/v1/models")

    async def health_check(self) -> dict:
        return await self._request("GET", "/api/v1/health", timeout=HEALTH_TIMEOUT)

    async def test_connection(self) -> bool:
        try:
            await self.health_check()
        except ClientError:
            return False
        return True
