"""Tracer configuration, read from ``RUNTRACER_*`` environment variables."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Callable, Optional, TypeVar

from runtracer import utils as rt_utils

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.smith.langchain.com"
DEFAULT_PROJECT = "default"

_T = TypeVar("_T")


def _parse_env(name: str, parse: Callable[[str], _T], default: _T) -> _T:
    raw = rt_utils.get_env_var(name)
    if raw is None:
        return default
    try:
        return parse(raw)
    except ValueError:
        logger.warning(
            f"Invalid value for RUNTRACER_{name}: {raw!r}. Using default {default!r}."
        )
        return default


@dataclasses.dataclass
class Configuration:
    """Settings shared by a tracer's client and batch processor.

    Attributes:
        api_key: Credential sent as ``X-API-Key``. Tracing needs one.
        endpoint: Base URL of the tracing backend.
        project: Project (session name) for root runs.
        tracing_enabled: Master switch. Disabled tracing runs traced code
            untouched.
        tenant_id: Default tenant for runs that don't name one.
        batch_size: Pending entries that trigger an immediate flush.
        flush_interval: Seconds between timer-driven flushes.
        timeout: HTTP timeout in seconds.
        max_retries: Transport-level retries for retryable responses.
        max_pending_entries: Cap on buffered entries. None means unbounded.
        shutdown_timeout: Seconds shutdown waits for the worker thread.
    """

    api_key: Optional[str] = None
    endpoint: str = DEFAULT_ENDPOINT
    project: str = DEFAULT_PROJECT
    tracing_enabled: bool = True
    tenant_id: Optional[str] = None
    batch_size: int = 100
    flush_interval: float = 1.0
    timeout: float = 10.0
    max_retries: int = 3
    max_pending_entries: Optional[int] = None
    shutdown_timeout: float = 5.0

    @classmethod
    def from_env(cls, **overrides: Any) -> Configuration:
        """Build a configuration from the environment, then apply overrides."""
        values: dict[str, Any] = {
            "api_key": rt_utils.get_env_var("API_KEY"),
            "endpoint": rt_utils.get_env_var("ENDPOINT", DEFAULT_ENDPOINT),
            "project": rt_utils.get_env_var("PROJECT", DEFAULT_PROJECT),
            "tracing_enabled": rt_utils.is_truish(rt_utils.get_env_var("TRACING")),
            "tenant_id": rt_utils.get_env_var("TENANT_ID"),
            "batch_size": _parse_env("BATCH_SIZE", int, 100),
            "flush_interval": _parse_env("FLUSH_INTERVAL", float, 1.0),
            "timeout": _parse_env("TIMEOUT", float, 10.0),
            "max_retries": _parse_env("MAX_RETRIES", int, 3),
            "max_pending_entries": _parse_env("MAX_PENDING_ENTRIES", int, None),
            "shutdown_timeout": _parse_env("SHUTDOWN_TIMEOUT", float, 5.0),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def tracing_possible(self) -> bool:
        return self.tracing_enabled and bool(self.api_key)

    def validate(self) -> None:
        """Raise ConfigurationError if these settings can't trace."""
        if self.tracing_enabled and not self.api_key:
            raise rt_utils.ConfigurationError(
                "An API key is required when tracing is enabled."
                " Set RUNTRACER_API_KEY or pass api_key."
            )
        if not self.endpoint:
            raise rt_utils.ConfigurationError("endpoint must not be empty.")
        if self.batch_size <= 0:
            raise rt_utils.ConfigurationError(
                f"batch_size must be positive; got {self.batch_size}"
            )
        if self.flush_interval <= 0:
            raise rt_utils.ConfigurationError(
                f"flush_interval must be positive; got {self.flush_interval}"
            )
        if self.max_pending_entries is not None and self.max_pending_entries <= 0:
            raise rt_utils.ConfigurationError(
                "max_pending_entries must be positive or None;"
                f" got {self.max_pending_entries}"
            )
        if self.max_retries < 0:
            raise rt_utils.ConfigurationError(
                f"max_retries must be non-negative; got {self.max_retries}"
            )
