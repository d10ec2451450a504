"""Static model catalog.

The catalog is built once at import time and never mutated, so every lookup
here is safe to call from concurrent request handlers.
"""

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Optional

from ..errors import UnknownModel

LOCAL = "local"
MINITOOL = "minitool"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    description: str
    provider: str
    category: str
    streaming: bool
    recommended: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _minitool(model_id: str, description: str, recommended: bool = False) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        name=model_id.upper().replace(".", " "),
        description=description,
        provider=MINITOOL,
        category="openai",
        streaming=False,
        recommended=recommended,
    )


MODEL_CATALOG: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="deepseek-coder-v2",
        name="DeepSeek Coder V2",
        description="Code generation and programming assistance",
        provider=LOCAL,
        category="coding",
        streaming=True,
    ),
    ModelDescriptor(
        id="llama3.1:8b",
        name="Llama 3.1 8B",
        description="General purpose conversational model",
        provider=LOCAL,
        category="general",
        streaming=True,
    ),
    ModelDescriptor(
        id="qwen2.5:1.5b",
        name="Qwen 2.5 1.5B",
        description="Lightweight and fast responses",
        provider=LOCAL,
        category="general",
        streaming=True,
    ),
    ModelDescriptor(
        id="MiniMax-M2",
        name="MiniMax M2",
        description="Balanced general purpose model",
        provider=LOCAL,
        category="general",
        streaming=True,
    ),
    ModelDescriptor(
        id="MiniMax-M2-Stable",
        name="MiniMax M2 Stable",
        description="Stable release of MiniMax M2",
        provider=LOCAL,
        category="general",
        streaming=True,
        recommended=True,
    ),
    _minitool("gpt-4o-mini", "Fast and affordable small model", recommended=True),
    _minitool("gpt-4.1-mini", "Improved small model with better reasoning"),
    _minitool("gpt-4.1-nano", "Smallest and fastest GPT-4.1 variant"),
    _minitool("gpt-5-mini", "Compact GPT-5 model"),
    _minitool("gpt-5-nano", "Ultra-light GPT-5 model"),
    _minitool("gpt-3.5-turbo", "Classic fast chat model"),
)

_BY_ID = MappingProxyType({m.id: m for m in MODEL_CATALOG})


def get_model_info(model_id: str) -> Optional[ModelDescriptor]:
    return _BY_ID.get(model_id)


def is_valid_model(model_id: str) -> bool:
    return model_id in _BY_ID


def resolve_provider(model_id: str) -> str:
    """Return the provider id serving *model_id*."""
    descriptor = _BY_ID.get(model_id)
    if descriptor is None:
        raise UnknownModel(f"Model '{model_id}' is not available")
    return descriptor.provider


def list_models(
    provider: Optional[str] = None, category: Optional[str] = None
) -> list[ModelDescriptor]:
    return [
        m
        for m in MODEL_CATALOG
        if (provider is None or m.provider == provider)
        and (category is None or m.category == category)
    ]


def list_providers() -> list[str]:
    return list(dict.fromkeys(m.provider for m in MODEL_CATALOG))


def list_categories() -> list[str]:
    return list(dict.fromkeys(m.category for m in MODEL_CATALOG))


def provider_models(provider: str) -> frozenset[str]:
    return frozenset(m.id for m in MODEL_CATALOG if m.provider == provider)
