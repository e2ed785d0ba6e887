import json

import httpx
import pytest

from image_search.errors import ProviderError, ProviderErrorCode
from image_search.gemini_client import GeminiClient, image_part, strip_json_fences, text_part


def _ok(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _client(handler):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return GeminiClient("test-key", client=http, base_url="https://gemini.test/v1beta")


def _generate(client, **kwargs):
    return client.generate(
        model="gemini-test",
        system_instruction="sys",
        parts=[text_part("hello")],
        temperature=0.1,
        max_output_tokens=100,
        **kwargs,
    )


def test_strip_json_fences():
    assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('  {"a": 1} ') == '{"a": 1}'
    assert strip_json_fences("") == ""


def test_generate_sends_expected_request():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return _ok('{"ok": true}')

    text = _generate(_client(handler), response_schema={"type": "OBJECT"})

    assert text == '{"ok": true}'
    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert seen["key"] == "test-key"
    cfg = seen["body"]["generationConfig"]
    assert cfg["responseMimeType"] == "application/json"
    assert cfg["responseSchema"] == {"type": "OBJECT"}
    assert seen["body"]["systemInstruction"]["parts"][0]["text"] == "sys"


def test_image_part_is_base64():
    part = image_part(b"\x89PNG", "image/png")
    assert part["inlineData"]["mimeType"] == "image/png"
    assert part["inlineData"]["data"] == "iVBORw=="


@pytest.mark.parametrize(
    "status,code",
    [
        (401, ProviderErrorCode.PROVIDER_AUTH_ERROR),
        (403, ProviderErrorCode.PROVIDER_AUTH_ERROR),
        (429, ProviderErrorCode.PROVIDER_RATE_LIMIT),
        (413, ProviderErrorCode.PROVIDER_CONTEXT_TOO_LARGE),
        (500, ProviderErrorCode.PROVIDER_NETWORK_ERROR),
    ],
)
def test_http_errors_are_classified(status, code):
    client = _client(lambda request: httpx.Response(status, json={"error": {"message": "nope"}}))
    with pytest.raises(ProviderError) as exc:
        _generate(client)
    assert exc.value.code == code
    assert exc.value.message == "nope"


def test_timeout_maps_to_provider_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderError) as exc:
        _generate(_client(handler))
    assert exc.value.code == ProviderErrorCode.PROVIDER_TIMEOUT


def test_transport_error_maps_to_network():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderError) as exc:
        _generate(_client(handler))
    assert exc.value.code == ProviderErrorCode.PROVIDER_NETWORK_ERROR


def test_empty_candidates_is_invalid_response():
    client = _client(lambda request: httpx.Response(200, json={"candidates": []}))
    with pytest.raises(ProviderError) as exc:
        _generate(client)
    assert exc.value.code == ProviderErrorCode.PROVIDER_INVALID_RESPONSE
