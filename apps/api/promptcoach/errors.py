from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import httpx
import openai


class ErrorKind(str, Enum):
    rate_limited = "rate-limited"
    overloaded = "overloaded"
    auth = "auth"
    network = "network"
    other = "other"


TRANSIENT_KINDS = frozenset({ErrorKind.rate_limited, ErrorKind.overloaded})


class PromptCoachError(Exception):
    """Base class for errors raised by the generation pipeline."""


class InvalidRequestError(PromptCoachError, ValueError):
    """The caller sent a request that is missing or has malformed fields."""


class ConfigurationError(PromptCoachError):
    """No provider credential is available; no provider call is attempted."""


class ProviderError(PromptCoachError):
    def __init__(self, kind: ErrorKind, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class ParseError(PromptCoachError):
    """Provider text was not structured data, or nothing survived validation."""


class ExhaustedError(PromptCoachError):
    """Every generative tier failed. Carries the first (most informative) failure."""

    def __init__(self, kind: ErrorKind, error: BaseException) -> None:
        super().__init__(str(error) or type(error).__name__)
        self.kind = kind
        self.error = error


STATUS_KINDS: dict[int, ErrorKind] = {
    429: ErrorKind.rate_limited,
    503: ErrorKind.overloaded,
    529: ErrorKind.overloaded,
    401: ErrorKind.auth,
    403: ErrorKind.auth,
}

MESSAGE_KINDS: tuple[tuple[str, ErrorKind], ...] = (
    ("quota", ErrorKind.rate_limited),
    ("rate limit", ErrorKind.rate_limited),
    ("resource_exhausted", ErrorKind.rate_limited),
    ("overloaded", ErrorKind.overloaded),
    ("api key", ErrorKind.auth),
    ("permission", ErrorKind.auth),
)

NETWORK_CODES = frozenset({"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET"})

NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
    openai.APIConnectionError,
)


def status_code_of(error: BaseException) -> Optional[int]:
    """Return the HTTP status an SDK exception carries, if any.

    OpenAI errors expose ``status_code``; google-genai errors expose an integer
    ``code``. Some wrappers use ``status`` instead.
    """
    for attr in ("status_code", "code", "status"):
        value: Any = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def message_kind(error: BaseException) -> Optional[ErrorKind]:
    message = str(error).lower()
    for needle, kind in MESSAGE_KINDS:
        if needle in message:
            return kind
    return None


def _is_network_error(error: BaseException) -> bool:
    if isinstance(error, NETWORK_ERRORS):
        return True
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in NETWORK_CODES:
        return True
    message = str(error).upper()
    return any(code in message for code in NETWORK_CODES)


def classify(error: BaseException) -> ErrorKind:
    """Map a provider failure onto an :class:`ErrorKind`.

    Status codes win over everything else; message substrings are only
    consulted when the error carries no status code at all.
    """
    if isinstance(error, ProviderError):
        return error.kind
    if isinstance(error, ParseError):
        return ErrorKind.other
    status = status_code_of(error)
    if status is not None:
        return STATUS_KINDS.get(status, ErrorKind.other)
    if _is_network_error(error):
        return ErrorKind.network
    return message_kind(error) or ErrorKind.other


def is_transient(kind: ErrorKind) -> bool:
    return kind in TRANSIENT_KINDS
