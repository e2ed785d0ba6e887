from __future__ import annotations

"""
Minimal client for the Gemini ``generateContent`` REST endpoint.

Only what the two model ports need: system instruction, inline parts, JSON
output mode with an optional response schema. Every failure leaves this
module as a ProviderError.
"""

import base64
import re
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from .config import (
    GEMINI_API_BASE,
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
)
from .errors import ProviderError, ProviderErrorCode, classify_status

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


def strip_json_fences(text: str) -> str:
    """Remove an optional ```json ... ``` wrapper around model output."""
    if not text:
        return ""
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text.strip()


def text_part(text: str) -> Dict[str, Any]:
    return {"text": text}


def image_part(image_bytes: bytes, mime_type: str) -> Dict[str, Any]:
    return {
        "inlineData": {
            "mimeType": mime_type,
            "data": base64.b64encode(image_bytes).decode("ascii"),
        }
    }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or body["error"])
    return str(body)[:300]


def extract_text(body: Any) -> str:
    """Concatenate the text parts of the first candidate."""
    try:
        parts = body["candidates"][0]["content"]["parts"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE,
            "Model response has no candidates",
            details=body if isinstance(body, dict) else None,
        ) from e
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    if not text.strip():
        raise ProviderError(ProviderErrorCode.PROVIDER_INVALID_RESPONSE, "Model returned empty text")
    return text


class GeminiClient:
    """
    One client per request: the API key is caller-supplied and never stored
    beyond the lifetime of this object.
    """

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.Client] = None,
        base_url: str = GEMINI_API_BASE,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                headers={"User-Agent": HTTP_USER_AGENT},
                timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
            )
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "GeminiClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def generate(
        self,
        model: str,
        system_instruction: str,
        parts: List[Dict[str, Any]],
        temperature: float,
        max_output_tokens: int,
        response_schema: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> str:
        """POST generateContent and return the raw response text."""
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
            "responseMimeType": "application/json",
        }
        if response_schema is not None:
            generation_config["responseSchema"] = response_schema

        payload = {
            "systemInstruction": {"parts": [text_part(system_instruction)]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        url = f"{self._base_url}/models/{model}:generateContent"
        timeout = None
        if timeout_ms is not None:
            timeout = httpx.Timeout(timeout_ms / 1000.0, connect=HTTP_CONNECT_TIMEOUT)

        kwargs: Dict[str, Any] = {"json": payload, "headers": {"x-goog-api-key": self._api_key}}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            r = self._http().post(url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Model call timed out: model={}", model)
            raise ProviderError(ProviderErrorCode.PROVIDER_TIMEOUT, f"{model} request timed out") from e
        except httpx.TransportError as e:
            logger.warning("Model call transport error: model={} err={}", model, e)
            raise ProviderError(ProviderErrorCode.PROVIDER_NETWORK_ERROR, f"{model} request failed: {e}") from e

        if r.status_code >= 400:
            code = classify_status(r.status_code)
            logger.warning("Model call HTTP {}: model={} code={}", r.status_code, model, code.value)
            raise ProviderError(code, _error_message(r), details={"status": r.status_code})

        try:
            body = r.json()
        except ValueError as e:
            raise ProviderError(
                ProviderErrorCode.PROVIDER_INVALID_RESPONSE, "Model response is not JSON"
            ) from e
        return extract_text(body)
