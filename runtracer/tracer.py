"""The Tracer bundles configuration, transport and batch processor.

Code that traces receives a Tracer explicitly or resolves one from the
ambient context: a tracer scoped with :func:`tracing_context` wins, then the
process default installed by :func:`configure`. Tests call :func:`reset` to
tear the default down.
"""

from __future__ import annotations

import contextlib
import contextvars
import dataclasses
import logging
import threading
from collections.abc import Generator
from typing import Any, Optional

from runtracer._internal._background_thread import BatchProcessor
from runtracer.client import Client
from runtracer.configuration import Configuration

logger = logging.getLogger(__name__)

_TRACER = contextvars.ContextVar[Optional["Tracer"]]("_TRACER", default=None)
# Not context-local, so it is visible from every thread and task.
_GLOBAL_TRACER: Optional["Tracer"] = None
_LOCK = threading.Lock()


class Tracer:
    """Everything a traced call needs to record and ship runs."""

    def __init__(
        self,
        config: Optional[Configuration] = None,
        *,
        client: Optional[Client] = None,
        batch_processor: Optional[BatchProcessor] = None,
    ) -> None:
        self.config = config if config is not None else Configuration.from_env()
        self.client = (
            client
            if client is not None
            else Client(
                self.config.endpoint,
                api_key=self.config.api_key,
                tenant_id=self.config.tenant_id,
                timeout=self.config.timeout,
                max_retries=self.config.max_retries,
            )
        )
        self.batch_processor = (
            batch_processor
            if batch_processor is not None
            else BatchProcessor(
                self.client,
                batch_size=self.config.batch_size,
                flush_interval=self.config.flush_interval,
                max_pending_entries=self.config.max_pending_entries,
                shutdown_timeout=self.config.shutdown_timeout,
            )
        )

    def __repr__(self) -> str:
        return (
            f"Tracer(project={self.config.project!r},"
            f" tracing_enabled={self.tracing_enabled})"
        )

    @property
    def tracing_enabled(self) -> bool:
        return self.config.tracing_possible

    def flush(self) -> None:
        """Send everything buffered so far, blocking until done."""
        self.batch_processor.flush()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        self.batch_processor.shutdown(timeout)


def configure(
    config: Optional[Configuration] = None,
    *,
    client: Optional[Client] = None,
    **overrides: Any,
) -> Tracer:
    """Install the process-wide default tracer.

    Args:
        config: Settings to use. Read from the environment when omitted.
        client: Transport to use instead of one built from ``config``.
        **overrides: Configuration fields to override.

    Raises:
        ConfigurationError: If the resulting settings are invalid.
    """
    global _GLOBAL_TRACER
    if config is None:
        config = Configuration.from_env(**overrides)
    elif overrides:
        config = dataclasses.replace(config, **overrides)
    config.validate()
    tracer = Tracer(config, client=client)
    with _LOCK:
        previous, _GLOBAL_TRACER = _GLOBAL_TRACER, tracer
    if previous is not None:
        previous.shutdown()
    return tracer


def get_tracer() -> Tracer:
    """Resolve the tracer for the current context."""
    global _GLOBAL_TRACER
    tracer = _TRACER.get()
    if tracer is not None:
        return tracer
    if _GLOBAL_TRACER is None:
        with _LOCK:
            if _GLOBAL_TRACER is None:
                _GLOBAL_TRACER = Tracer(Configuration.from_env())
    return _GLOBAL_TRACER


def reset(timeout: Optional[float] = None) -> None:
    """Shut down and forget the process-wide default tracer."""
    global _GLOBAL_TRACER
    with _LOCK:
        previous, _GLOBAL_TRACER = _GLOBAL_TRACER, None
    if previous is not None:
        previous.shutdown(timeout)


@contextlib.contextmanager
def tracing_context(tracer: Tracer) -> Generator[Tracer, None, None]:
    """Use ``tracer`` for every traced call made inside the block."""
    token = _TRACER.set(tracer)
    try:
        yield tracer
    finally:
        _TRACER.reset(token)
