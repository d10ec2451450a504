"""Ordered content extractors for loosely-shaped upstream payloads.

Upstreams answer with a handful of envelope shapes. Each extractor recognises
one shape and returns the text it carries, or ``None`` to pass the payload on
to the next extractor in its chain.
"""

from typing import Any, Callable, Optional

from ..errors import UnparseableResponse

Extractor = Callable[[Any], Optional[str]]

_TEXT_PART_TYPES = ("text", "output_text")
_TEXT_KEYS = ("message", "answer", "result", "content")


def extract_plain_string(data: Any) -> Optional[str]:
    return data if isinstance(data, str) else None


def extract_output_parts(data: Any) -> Optional[str]:
    """Join text parts of ``output[]`` items of type ``message``."""
    if not isinstance(data, dict) or not isinstance(data.get("output"), list):
        return None
    texts: list[str] = []
    for item in data["output"]:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if (
                isinstance(part, dict)
                and part.get("type") in _TEXT_PART_TYPES
                and isinstance(part.get("text"), str)
            ):
                texts.append(part["text"])
    return "\n".join(texts) if texts else None


def extract_keyed_field(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in _TEXT_KEYS:
        if isinstance(data.get(key), str):
            return data[key]
    return None


def extract_choice_delta(data: Any) -> Optional[str]:
    """OpenAI streaming delta: ``choices[0].delta.content``."""
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return delta["content"]
    return None


def extract_content_field(data: Any) -> Optional[str]:
    if isinstance(data, dict) and isinstance(data.get("content"), str):
        return data["content"]
    return None


def extract_message_content(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return None


RESPONSE_EXTRACTORS: tuple[Extractor, ...] = (
    extract_plain_string,
    extract_output_parts,
    extract_keyed_field,
)

DELTA_EXTRACTORS: tuple[Extractor, ...] = (
    extract_choice_delta,
    extract_content_field,
    extract_message_content,
    extract_plain_string,
)


def _first_match(data: Any, chain: tuple[Extractor, ...]) -> Optional[str]:
    for extractor in chain:
        text = extractor(data)
        if text is not None:
            return text
    return None


def extract_text(data: Any) -> str:
    """Pull the answer text out of a completed response payload."""
    text = _first_match(data, RESPONSE_EXTRACTORS)
    if text is None:
        raise UnparseableResponse("Unable to extract text from response")
    return text


def extract_delta(data: Any) -> Optional[str]:
    """Pull incremental content out of a stream record, or ``None``."""
    text = _first_match(data, DELTA_EXTRACTORS)
    if text is None:
        text = _first_match(data, RESPONSE_EXTRACTORS)
    return text
