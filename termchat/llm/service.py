import logging
import time
from typing import Mapping, Optional

from ..config import AppConfig
from ..errors import UnknownModel
from . import registry
from .base import ChatResult, LLMProvider
from .local_provider import LocalLLMProvider
from .minitool_provider import MinitoolProvider
from .prompts import prepare_messages

logger = logging.getLogger(__name__)


def build_providers(config: AppConfig) -> dict[str, LLMProvider]:
    llm = config.llm
    return {
        registry.LOCAL: LocalLLMProvider(
            base_url=llm.local_base_url,
            endpoint=llm.local_endpoint,
            max_tokens=llm.max_tokens,
            timeout=llm.request_timeout,
        ),
        registry.MINITOOL: MinitoolProvider(
            base_url=llm.minitool_base_url,
            solver_url=llm.turnstile_solver_url,
            site_key=llm.turnstile_site_key,
            timeout=llm.request_timeout,
        ),
    }


class UnifiedChatService:
    """Routes a chat turn to the provider that serves the requested model."""

    def __init__(self, providers: Mapping[str, LLMProvider], config: AppConfig):
        self._providers = dict(providers)
        self._config = config

    @property
    def default_model(self) -> str:
        return self._config.chat.default_model

    async def chat(
        self,
        message: str,
        model: Optional[str] = None,
        history: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
        stream: bool = False,
    ) -> ChatResult:
        selected = model or self.default_model
        descriptor = registry.get_model_info(selected)
        if descriptor is None:
            raise UnknownModel(f"Model '{selected}' is not available")
        provider = self._providers.get(descriptor.provider)
        if provider is None:
            raise UnknownModel(f"Provider '{descriptor.provider}' is not configured")

        if temperature is None:
            temperature = self._config.llm.default_temperature
        chat_cfg = self._config.chat
        messages = prepare_messages(
            message,
            history,
            chat_cfg.assistant_name,
            chat_cfg.prompt_timezone,
            chat_cfg.history_limit,
        )

        want_stream = stream and descriptor.streaming
        if stream and not want_stream:
            logger.debug("Model %s cannot stream, answering in one piece", selected)

        start = time.monotonic()
        result = await provider.chat(messages, selected, temperature, stream=want_stream)
        result.provider = descriptor.provider
        result.model = result.model or selected
        if not result.duration:
            result.duration = int((time.monotonic() - start) * 1000)
        return result

    def list_models(self, provider: Optional[str] = None, category: Optional[str] = None):
        return registry.list_models(provider=provider, category=category)

    def get_model_info(self, model_id: str):
        return registry.get_model_info(model_id)
