import pytest

from inference import MalformedOutput, Success
from normalizer import normalize_response, strip_fence

PLAIN = '{"amount": -12.5, "merchant": "Lidl"}'


@pytest.mark.parametrize("wrapped", [
    f"```json\n{PLAIN}\n```",
    f"```\n{PLAIN}\n```",
    f"```JSON\r\n{PLAIN}\r\n```",
    f"  ```json\n{PLAIN}```  ",
])
def test_fenced_text_normalizes_like_plain_text(wrapped):
    assert normalize_response(wrapped) == normalize_response(PLAIN)


def test_strip_fence_leaves_unfenced_text_alone():
    assert strip_fence(PLAIN) == PLAIN


def test_object_embedded_in_prose_is_found():
    result = normalize_response('Here is the result: {"category": "food", "confidence": 0.9} Hope it helps!')
    assert isinstance(result, Success)
    assert result.structured == {"category": "food", "confidence": 0.9}


def test_nested_braces_use_greedy_match():
    result = normalize_response('Result: {"a": {"b": 1}, "c": [1, 2]} end')
    assert result.structured == {"a": {"b": 1}, "c": [1, 2]}


@pytest.mark.parametrize("raw", ["", "no json here", "{not: json}", "[1, 2, 3]", '"just a string"', None])
def test_unparseable_output_is_reported_not_raised(raw):
    result = normalize_response(raw, provider_id="openai")
    assert isinstance(result, MalformedOutput)
    assert result.reason == "invalid_json"
    assert result.provider_id == "openai"
    assert result.raw_text == (raw or "")


def test_success_carries_provider_id():
    assert normalize_response(PLAIN, provider_id="gemini").provider_id == "gemini"
