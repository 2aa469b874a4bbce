"""Generic utility functions."""

from __future__ import annotations

import datetime
import logging
import os
import traceback
from typing import Any, Optional

from requests import HTTPError, Response

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})
_TRUISH = ("true", "1", "yes", "on")


class RunTracerError(Exception):
    """Base error for the runtracer SDK."""


class ConfigurationError(RunTracerError):
    """The tracer was configured with invalid or incomplete settings."""


class ValidationError(RunTracerError, ValueError):
    """A run was constructed with invalid field values."""


class TransportError(RunTracerError):
    """A batch could not be delivered to the tracing backend.

    Attributes:
        status_code: The HTTP status code, or None for connection failures.
        body: The response body text, when one was received.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code in _RETRYABLE_STATUS_CODES or self.status_code >= 500


def raise_for_status_with_text(response: Response) -> None:
    """Raise a TransportError carrying the response text."""
    try:
        response.raise_for_status()
    except HTTPError as e:
        raise TransportError(
            f"{response.request.method} {response.url} failed with status"
            f" {response.status_code}: {response.text}",
            status_code=response.status_code,
            body=response.text,
        ) from e


def get_env_var(
    name: str,
    default: Optional[str] = None,
    *,
    namespaces: tuple[str, ...] = ("RUNTRACER",),
) -> Optional[str]:
    """Read a namespaced environment variable, stripping surrounding quotes.

    Empty values are treated as unset.
    """
    for namespace in namespaces:
        value = os.environ.get(f"{namespace}_{name}")
        if value is None:
            continue
        value = value.strip().strip('"').strip("'")
        if value:
            return value
    return default


def is_truish(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in _TRUISH


def format_error(error: Any, max_frames: int = 10) -> str:
    """Render an error for the run's ``error`` field.

    Exceptions become ``"<TypeName>: <message>"`` followed by the innermost
    ``max_frames`` traceback frames. Strings pass through unchanged.
    """
    if isinstance(error, BaseException):
        header = f"{type(error).__name__}: {error}"
        if error.__traceback__ is None:
            return header
        frames = traceback.extract_tb(error.__traceback__)[-max_frames:]
        # One frame at a time, so recursive frames are not folded together.
        rendered = "".join("".join(traceback.format_list([f])) for f in frames)
        return header + "\n" + rendered.rstrip("\n")
    if isinstance(error, str):
        return error
    return str(error)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_timestamp(dt: Optional[datetime.datetime]) -> Optional[str]:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    dt = dt.astimezone(datetime.timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
