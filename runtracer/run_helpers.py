"""Decorator and helpers for tracing functions."""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Awaitable, Mapping
from typing import Any, Callable, Optional, TypeVar, Union, overload

from runtracer import schemas as rt_schemas
from runtracer._internal import _context
from runtracer.run_trees import Run, RunTree
from runtracer.tracer import Tracer, get_tracer

logger = logging.getLogger(__name__)

R = TypeVar("R")
F = TypeVar("F", bound=Callable[..., Any])


def get_current_run() -> Optional[Run]:
    """Get the run that is active in the current context, if any."""
    return _context.current_run()


def is_tracing() -> bool:
    """Whether code is running inside a traced run in the current context.

    Use ``Tracer.tracing_enabled`` to check whether runs are recorded at all.
    """
    return _context.is_active()


def flush(tracer: Optional[Tracer] = None) -> None:
    """Block until every buffered run has been handed to the transport."""
    (tracer or get_tracer()).flush()


def shutdown(tracer: Optional[Tracer] = None, timeout: Optional[float] = None) -> None:
    (tracer or get_tracer()).shutdown(timeout)


@overload
def trace(
    name: str,
    func: Callable[[Run], Awaitable[R]],
    *,
    run_type: Union[str, rt_schemas.RunTypeEnum] = ...,
    inputs: Optional[dict] = ...,
    metadata: Optional[Mapping[str, Any]] = ...,
    tags: Optional[list[str]] = ...,
    extra: Optional[dict] = ...,
    parent_run_id: Optional[str] = ...,
    tenant_id: Optional[str] = ...,
    project: Optional[str] = ...,
    tracer: Optional[Tracer] = ...,
) -> Awaitable[R]: ...


@overload
def trace(
    name: str,
    func: Callable[[Run], R],
    *,
    run_type: Union[str, rt_schemas.RunTypeEnum] = ...,
    inputs: Optional[dict] = ...,
    metadata: Optional[Mapping[str, Any]] = ...,
    tags: Optional[list[str]] = ...,
    extra: Optional[dict] = ...,
    parent_run_id: Optional[str] = ...,
    tenant_id: Optional[str] = ...,
    project: Optional[str] = ...,
    tracer: Optional[Tracer] = ...,
) -> R: ...


def trace(
    name: str,
    func: Callable[[Run], Any],
    *,
    run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
    inputs: Optional[dict] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    tags: Optional[list[str]] = None,
    extra: Optional[dict] = None,
    parent_run_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    project: Optional[str] = None,
    tracer: Optional[Tracer] = None,
) -> Any:
    """Run ``func`` as a traced run and return its result.

    ``func`` receives the :class:`Run` so it can attach metadata, tags, token
    usage and so on. Its return value is recorded as ``{"result": value}``.
    Exceptions are recorded on the run and re-raised unchanged.

    For a coroutine function the call returns an awaitable; the run is linked
    to its parent when ``trace`` is called, not when it is awaited.

    Example:
        .. code-block:: python

            import runtracer

            def handle(run):
                run.add_metadata(user_id="123")
                return answer(question)

            result = runtracer.trace("answer_question", handle, inputs={"q": question})
    """
    tree = RunTree(
        name,
        run_type,
        inputs=inputs,
        metadata=dict(metadata) if metadata else None,
        tags=tags,
        extra=extra,
        parent_run_id=parent_run_id,
        tenant_id=tenant_id,
        project=project,
        tracer=tracer,
    )
    if inspect.iscoroutinefunction(func):
        return tree.aexecute(func)
    return tree.execute(func)


def _get_inputs(
    args: tuple,
    kwargs: dict,
    process_inputs: Optional[Callable[..., dict]],
) -> dict:
    if process_inputs is not None:
        try:
            return dict(process_inputs(*args, **kwargs))
        except Exception as e:
            logger.warning(
                f"process_inputs failed; recording raw arguments instead. {e!r}"
            )
    inputs: dict[str, Any] = {}
    if args:
        inputs["args"] = list(args)
    if kwargs:
        inputs["kwargs"] = dict(kwargs)
    return inputs


@overload
def traceable(func: F) -> F: ...


@overload
def traceable(
    func: None = None,
    *,
    name: Optional[str] = None,
    run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
    metadata: Optional[Mapping[str, Any]] = None,
    tags: Optional[list[str]] = None,
    process_inputs: Optional[Callable[..., dict]] = None,
    tenant_id: Optional[str] = None,
    project: Optional[str] = None,
    tracer: Optional[Tracer] = None,
) -> Callable[[F], F]: ...


def traceable(
    func: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
    metadata: Optional[Mapping[str, Any]] = None,
    tags: Optional[list[str]] = None,
    process_inputs: Optional[Callable[..., dict]] = None,
    tenant_id: Optional[str] = None,
    project: Optional[str] = None,
    tracer: Optional[Tracer] = None,
) -> Any:
    """Trace every call of a function.

    The wrapped function is called with its own arguments, not the run;
    use :func:`get_current_run` inside it to reach the run. Inputs are
    recorded as ``{"args": [...], "kwargs": {...}}`` unless
    ``process_inputs`` maps the call arguments to a dict itself.

    Args:
        name: Run name. Defaults to the function's name.
        run_type: One of chain, llm, tool, retriever, prompt, parser.
        metadata: Metadata attached to every run.
        tags: Tags attached to every run.
        process_inputs: Called with the function's arguments to build inputs.
        tenant_id: Tenant for root runs created by this function.
        project: Project for root runs created by this function.
        tracer: Tracer to use instead of the ambient one.

    Example:
        .. code-block:: python

            @traceable(run_type="tool")
            def search(query: str, limit: int = 5) -> list[str]:
                ...

            @traceable
            async def summarize(text: str) -> str:
                ...
    """

    def decorator(fn: Callable) -> Callable:
        run_name = name or fn.__name__

        def _make_tree(args: tuple, kwargs: dict, active: Tracer) -> RunTree:
            return RunTree(
                run_name,
                run_type,
                inputs=_get_inputs(args, kwargs, process_inputs),
                metadata=dict(metadata) if metadata else None,
                tags=tags,
                tenant_id=tenant_id,
                project=project,
                tracer=active,
            )

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                active = tracer or get_tracer()
                if not active.tracing_enabled:
                    return await fn(*args, **kwargs)
                tree = _make_tree(args, kwargs, active)
                return await tree.aexecute(lambda _run: fn(*args, **kwargs))

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            active = tracer or get_tracer()
            if not active.tracing_enabled:
                return fn(*args, **kwargs)
            tree = _make_tree(args, kwargs, active)
            return tree.execute(lambda _run: fn(*args, **kwargs))

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
