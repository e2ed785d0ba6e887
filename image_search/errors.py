from __future__ import annotations

"""
Error taxonomy shared by the external model ports and the HTTP layer.

Every failure that crosses a port boundary is raised as a ProviderError
carrying one of the ProviderErrorCode values; the original exception (if any)
is chained via ``raise ... from``.
"""

from enum import Enum
from typing import Any, Optional


class ProviderErrorCode(str, Enum):
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_RATE_LIMIT = "PROVIDER_RATE_LIMIT"
    PROVIDER_AUTH_ERROR = "PROVIDER_AUTH_ERROR"
    PROVIDER_INVALID_RESPONSE = "PROVIDER_INVALID_RESPONSE"
    PROVIDER_NETWORK_ERROR = "PROVIDER_NETWORK_ERROR"
    PROVIDER_CONTEXT_TOO_LARGE = "PROVIDER_CONTEXT_TOO_LARGE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# HTTP status used by the API layer for each code.
HTTP_STATUS_BY_CODE = {
    ProviderErrorCode.PROVIDER_AUTH_ERROR: 401,
    ProviderErrorCode.PROVIDER_RATE_LIMIT: 429,
    ProviderErrorCode.PROVIDER_TIMEOUT: 408,
    ProviderErrorCode.PROVIDER_INVALID_RESPONSE: 502,
    ProviderErrorCode.PROVIDER_NETWORK_ERROR: 503,
    ProviderErrorCode.PROVIDER_CONTEXT_TOO_LARGE: 413,
    ProviderErrorCode.INTERNAL_ERROR: 500,
}


class ProviderError(Exception):
    """A classified failure of an external model call."""

    def __init__(self, code: ProviderErrorCode, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    @property
    def is_auth(self) -> bool:
        return self.code == ProviderErrorCode.PROVIDER_AUTH_ERROR

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def __repr__(self) -> str:
        return f"ProviderError({self.code.value}, {self.message!r})"


def classify_status(status: int) -> ProviderErrorCode:
    """Map an upstream HTTP status to an error code."""
    if status in (401, 403):
        return ProviderErrorCode.PROVIDER_AUTH_ERROR
    if status == 429:
        return ProviderErrorCode.PROVIDER_RATE_LIMIT
    if status in (408, 504):
        return ProviderErrorCode.PROVIDER_TIMEOUT
    if status == 413:
        return ProviderErrorCode.PROVIDER_CONTEXT_TOO_LARGE
    if status >= 500:
        return ProviderErrorCode.PROVIDER_NETWORK_ERROR
    return ProviderErrorCode.INTERNAL_ERROR
