"""Scraped chat provider backed by the minitoolai.com web chat.

A single answer takes a six step handshake: anti-bot token, page tokens,
message post, stream token fetch, SSE parse, text extraction. Each step
fails on its own with a ProviderError naming it. The site never streams
to us incrementally, so streaming requests are answered in one piece.
"""

import json
import logging
import re
import time
from typing import Optional
from urllib.parse import quote

import httpx

from ..errors import ProviderError, UpstreamUnavailable
from .base import ChatResult, LLMProvider
from .extractors import extract_text
from .prompts import flatten_messages
from .registry import MINITOOL, provider_models

logger = logging.getLogger(__name__)

CHAT_PATH = "/chatGPT/"
STREAM_PATH = "/chatGPT/chatgpt_stream.php"

_SAFETY_ID_RE = re.compile(r'var\s+safety_identifier\s*=\s*"([^"]*)"')
_UTOKEN_RE = re.compile(r'var\s+utoken\s*=\s*"([^"]*)"')

# Form fields the page submits empty when no images or prior turns are attached
_EMPTY_FORM_FIELDS = (
    "messagebase64img1", "messagebase64img0", "umes1a", "umes1stimg1a",
    "umes2ndimg1a", "bres1a", "umes2a", "umes1stimg2a", "umes2ndimg2a", "bres2a",
)


class MinitoolProvider(LLMProvider):
    name = MINITOOL
    models = provider_models(MINITOOL)

    def __init__(
        self,
        base_url: str = "https://minitoolai.com",
        solver_url: str = "https://api.nekolabs.web.id/tls/bypass/cf-turnstile",
        site_key: str = "0x4AAAAAABjI2cBIeVpBYEFi",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.base_url = base_url.rstrip("/")
        self.solver_url = solver_url
        self.site_key = site_key

    def _browser_headers(self) -> dict:
        return {
            "accept": "*/*",
            "accept-language": "id-ID,id;q=0.9,en-US;q=0.8,en;q=0.7",
            "origin": self.base_url,
            "referer": self.base_url + CHAT_PATH,
            "sec-ch-ua": '"Chromium";v="137", "Not(A)Brand";v="24"',
            "sec-ch-ua-mobile": "?1",
            "sec-ch-ua-platform": '"Android"',
            "sec-fetch-dest": "empty",
            "sec-fetch-mode": "cors",
            "sec-fetch-site": "same-origin",
            "user-agent": (
                "Mozilla/5.0 (Linux; Android 10; K) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/137.0.0.0 Mobile Safari/537.36"
            ),
            "x-requested-with": "XMLHttpRequest",
        }

    async def chat(
        self,
        messages: list[dict],
        model: str,
        temperature: float,
        stream: bool = False,
    ) -> ChatResult:
        self.validate_model(model)
        question = flatten_messages(messages)
        start = time.monotonic()
        logger.info(f"[Minitool] {model}: {len(question)} chars")

        try:
            # Cookies set by the page must ride along on the later steps
            async with self._client(follow_redirects=True) as client:
                cf_token = await self._solve_turnstile(client)
                safety_identifier, utoken = await self._fetch_page_tokens(client)
                stream_token = await self._post_message(
                    client, question, model, temperature, safety_identifier, utoken, cf_token
                )
                sse_text = await self._fetch_stream(client, stream_token)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Cannot reach {self.base_url}: {e}") from e

        completed = find_completed_response(sse_text)
        text = extract_text(completed).strip()
        if not text:
            raise ProviderError("Empty response text")

        duration = int((time.monotonic() - start) * 1000)
        usage = completed.get("usage") if isinstance(completed, dict) else None
        logger.info(f"[Minitool] {model}: {len(text)} chars in {duration}ms")
        return ChatResult(
            model=model,
            provider=self.name,
            content=text,
            usage=usage,
            duration=duration,
        )

    async def _solve_turnstile(self, client: httpx.AsyncClient) -> str:
        resp = await client.post(
            self.solver_url,
            json={"url": self.base_url + CHAT_PATH, "siteKey": self.site_key},
        )
        try:
            resp.raise_for_status()
            token = resp.json().get("result")
        except (httpx.HTTPStatusError, ValueError, AttributeError) as e:
            logger.error("Turnstile solver failed: %s", e)
            raise ProviderError("Cloudflare bypass failed") from e
        if not token:
            raise ProviderError("Cloudflare bypass failed")
        return token

    async def _fetch_page_tokens(self, client: httpx.AsyncClient) -> tuple[str, str]:
        resp = await client.get(self.base_url + CHAT_PATH, headers=self._browser_headers())
        if resp.status_code >= 400:
            raise ProviderError(f"Chat page returned HTTP {resp.status_code}")
        html = resp.text
        safety = _SAFETY_ID_RE.search(html)
        if not safety:
            raise ProviderError("Failed to extract safety_identifier")
        utoken = _UTOKEN_RE.search(html)
        if not utoken:
            raise ProviderError("Failed to extract utoken")
        return safety.group(1), utoken.group(1)

    async def _post_message(
        self,
        client: httpx.AsyncClient,
        question: str,
        model: str,
        temperature: float,
        safety_identifier: str,
        utoken: str,
        cf_token: str,
    ) -> str:
        form = {field: "" for field in _EMPTY_FORM_FIELDS}
        form.update(
            {
                "safety_identifier": safety_identifier,
                "select_model": model,
                "temperature": str(temperature),
                "utoken": utoken,
                "message": question,
                # The site expects the token pre-escaped inside the form body
                "cft": quote(cf_token, safe=""),
            }
        )
        headers = self._browser_headers()
        headers["content-type"] = "application/x-www-form-urlencoded; charset=UTF-8"
        resp = await client.post(self.base_url + STREAM_PATH, data=form, headers=headers)
        if resp.status_code >= 400:
            raise ProviderError(f"Message post returned HTTP {resp.status_code}")
        stream_token = resp.text.strip()
        if not stream_token:
            raise ProviderError("No stream token received")
        return stream_token

    async def _fetch_stream(self, client: httpx.AsyncClient, stream_token: str) -> str:
        resp = await client.get(
            self.base_url + STREAM_PATH,
            params={"streamtoken": stream_token},
            headers=self._browser_headers(),
        )
        if resp.status_code >= 400:
            raise ProviderError(f"Response stream returned HTTP {resp.status_code}")
        return resp.text


def parse_sse_events(text: str) -> list:
    """Decode the ``data:`` payload of each blank-line separated SSE event."""
    events = []
    for block in text.split("\n\n"):
        if not block.strip():
            continue
        for line in block.split("\n"):
            if line.startswith("data: "):
                try:
                    events.append(json.loads(line[6:]))
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed SSE event: %s", line[:80])
                break
    return events


def find_completed_response(text: str):
    for event in parse_sse_events(text):
        if isinstance(event, dict) and event.get("type") == "response.completed":
            response = event.get("response")
            if response:
                return response
    raise ProviderError("No valid response from AI")
