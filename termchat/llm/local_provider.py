import logging
import time
from typing import Optional

import httpx

from ..errors import ProviderError, UnparseableResponse, UpstreamUnavailable
from .base import ChatResult, LLMProvider, UpstreamStream
from .extractors import extract_text
from .registry import LOCAL, provider_models

logger = logging.getLogger(__name__)

_HEADERS = {
    "Content-Type": "application/json",
    "User-Agent": "termchat-backend/1.0.0",
}


class LocalLLMProvider(LLMProvider):
    """OpenAI-compatible chat completions endpoint (vLLM, Ollama, llama.cpp, ...).

    Supports both plain completions and SSE streaming; a streaming call
    returns the open upstream response so the relay sees the raw records.
    """

    name = LOCAL
    models = provider_models(LOCAL)

    def __init__(
        self,
        base_url: str,
        endpoint: str = "/v1/chat/completions",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.url = base_url.rstrip("/") + endpoint
        self.max_tokens = max_tokens

    def _payload(self, messages: list[dict], model: str, temperature: float, stream: bool) -> dict:
        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "temperature": temperature,
            "max_tokens": self.max_tokens,
        }

    async def chat(
        self,
        messages: list[dict],
        model: str,
        temperature: float,
        stream: bool = False,
    ) -> ChatResult:
        self.validate_model(model)
        payload = self._payload(messages, model, temperature, stream)
        logger.info(f"[Local] {model}: {len(messages)} messages, stream={stream}")
        if stream:
            return await self._open_stream(payload, model)
        return await self._complete(payload, model)

    async def _complete(self, payload: dict, model: str) -> ChatResult:
        start = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(self.url, json=payload, headers=_HEADERS)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Upstream returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Cannot reach {self.url}: {e}") from e
        except ValueError as e:
            raise UnparseableResponse("Upstream returned invalid JSON") from e

        content = _message_content(data)
        if not content:
            raise UnparseableResponse("No response content from AI")
        return ChatResult(
            model=data.get("model") or model,
            provider=self.name,
            content=content.strip(),
            usage=data.get("usage"),
            duration=int((time.monotonic() - start) * 1000),
        )

    async def _open_stream(self, payload: dict, model: str) -> ChatResult:
        start = time.monotonic()
        client = self._client()
        try:
            request = client.build_request("POST", self.url, json=payload, headers=_HEADERS)
            resp = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise UpstreamUnavailable(f"Cannot reach {self.url}: {e}") from e

        if resp.status_code >= 400:
            await resp.aread()
            await resp.aclose()
            await client.aclose()
            raise ProviderError(f"Upstream returned HTTP {resp.status_code}")

        return ChatResult(
            model=model,
            provider=self.name,
            stream=UpstreamStream(resp, client),
            duration=int((time.monotonic() - start) * 1000),
        )


def _message_content(data) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if isinstance(content, str):
        return content
    try:
        return extract_text(data)
    except UnparseableResponse:
        return None
