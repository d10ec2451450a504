import pytest

from termchat.errors import UnparseableResponse
from termchat.llm.extractors import extract_delta, extract_text


def test_plain_string_response():
    assert extract_text("just text") == "just text"


def test_output_parts_joined_with_newlines():
    data = {
        "output": [
            {"type": "reasoning", "content": [{"type": "text", "text": "hidden"}]},
            {
                "type": "message",
                "content": [
                    {"type": "output_text", "text": "first"},
                    {"type": "refusal", "text": "skipped"},
                    {"type": "text", "text": "second"},
                ],
            },
        ]
    }
    assert extract_text(data) == "first\nsecond"


def test_keyed_fields_in_priority_order():
    assert extract_text({"answer": "a", "result": "r"}) == "a"
    assert extract_text({"content": "c", "message": "m"}) == "m"


def test_output_without_text_falls_through_to_keys():
    data = {"output": [{"type": "message", "content": []}], "result": "fallback"}
    assert extract_text(data) == "fallback"


def test_unrecognised_shape_raises():
    with pytest.raises(UnparseableResponse):
        extract_text({"foo": 1})
    with pytest.raises(UnparseableResponse):
        extract_text(None)


def test_delta_prefers_choice_delta():
    record = {"choices": [{"delta": {"content": "tok"}}], "content": "other"}
    assert extract_delta(record) == "tok"


def test_delta_fallbacks():
    assert extract_delta({"content": "c"}) == "c"
    assert extract_delta({"message": {"content": "m"}}) == "m"
    assert extract_delta("s") == "s"


def test_delta_without_content_is_none():
    assert extract_delta({"choices": [{"delta": {"role": "assistant"}}]}) is None
    assert extract_delta({"choices": []}) is None
    assert extract_delta({"error": "boom"}) is None
    assert extract_delta(42) is None
