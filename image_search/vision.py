from __future__ import annotations

"""
Stage 1: structured signal extraction from the query image.
"""

import json
from typing import Callable, Optional

from loguru import logger
from pydantic import ValidationError

from .config import (
    GEMINI_MODEL_VISION,
    VISION_INVALID_RETRIES,
    VISION_MAX_OUTPUT_TOKENS,
    VISION_RETRY_DELAY_S,
    VISION_TEMPERATURE,
)
from .errors import ProviderError, ProviderErrorCode
from .gemini_client import GeminiClient, image_part, strip_json_fences, text_part
from .prompts import VISION_SYSTEM_PROMPT, build_vision_user_prompt
from .retry import RetryPolicy, call_timeout_ms, fixed_delay
from .schemas import AiCallConfig, ImageSignals

ClientFactory = Callable[[str], GeminiClient]


def parse_signals(text: str) -> ImageSignals:
    """Parse model text into ImageSignals or raise PROVIDER_INVALID_RESPONSE."""
    try:
        raw = json.loads(strip_json_fences(text))
    except json.JSONDecodeError as e:
        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE, f"Vision output is not valid JSON: {e.msg}"
        ) from e
    try:
        return ImageSignals.model_validate(raw)
    except ValidationError as e:
        raise ProviderError(
            ProviderErrorCode.PROVIDER_INVALID_RESPONSE,
            "Vision output does not match the signals schema",
            details=e.errors(include_url=False),
        ) from e


def default_vision_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=1 + max(0, VISION_INVALID_RETRIES),
        backoff=fixed_delay(VISION_RETRY_DELAY_S),
    )


class GeminiSignalExtractor:
    """
    Only unparsable output is retried; an invalid key or an upstream outage
    will not be fixed by asking again.
    """

    def __init__(
        self,
        client_factory: ClientFactory = GeminiClient,
        policy: Optional[RetryPolicy] = None,
        model: str = GEMINI_MODEL_VISION,
    ):
        self._client_factory = client_factory
        self._policy = policy or default_vision_policy()
        self._model = model

    def extract_signals(
        self,
        image_bytes: bytes,
        mime_type: str,
        prompt: Optional[str],
        api_key: str,
        request_id: str,
        config: Optional[AiCallConfig] = None,
    ) -> ImageSignals:
        config = config or AiCallConfig()
        temperature = VISION_TEMPERATURE if config.temperature is None else config.temperature
        max_tokens = config.max_output_tokens or VISION_MAX_OUTPUT_TOKENS
        parts = [text_part(build_vision_user_prompt(prompt)), image_part(image_bytes, mime_type)]

        with self._client_factory(api_key) as client:
            for attempt in self._policy.attempts():
                try:
                    timeout_ms = call_timeout_ms(config.timeout_ms, config.deadline, "Vision")
                    text = client.generate(
                        model=self._model,
                        system_instruction=VISION_SYSTEM_PROMPT,
                        parts=parts,
                        temperature=temperature,
                        max_output_tokens=max_tokens,
                        timeout_ms=timeout_ms,
                    )
                    signals = parse_signals(text)
                except ProviderError as e:
                    if e.code != ProviderErrorCode.PROVIDER_INVALID_RESPONSE or self._policy.is_last(attempt):
                        logger.warning("[{}] Vision failed: code={} attempt={}", request_id, e.code.value, attempt)
                        raise
                    delay = self._policy.wait(attempt, deadline=config.deadline)
                    logger.warning(
                        "[{}] Vision output invalid (attempt {}/{}), retrying in {}s",
                        request_id, attempt, self._policy.max_attempts, delay,
                    )
                    continue

                logger.info(
                    "[{}] Vision signals: category={} ({:.2f}) type={} ({:.2f}) keywords={}",
                    request_id,
                    signals.category_guess.value,
                    signals.category_guess.confidence,
                    signals.type_guess.value,
                    signals.type_guess.confidence,
                    len(signals.keywords),
                )
                return signals

        # unreachable: the last attempt either returns or raises
        raise ProviderError(ProviderErrorCode.INTERNAL_ERROR, "Vision retry loop exhausted")
