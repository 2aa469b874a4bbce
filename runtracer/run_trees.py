"""Runs and the run tree that builds them from the ambient context."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Iterable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar, Union

from runtracer import schemas as rt_schemas
from runtracer import utils as rt_utils
from runtracer._internal import _context
from runtracer._internal._uuid import uuid7_from_datetime

if TYPE_CHECKING:
    from runtracer.tracer import Tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")

DOTTED_ORDER_TIME_FORMAT = "%Y%m%dT%H%M%S%fZ"
# Length of a canonical UUID string, the tail of every dotted-order segment
TIMESTAMP_LENGTH = 36


def create_dotted_order(
    start_time: datetime, run_id: str, parent_dotted_order: Optional[str] = None
) -> str:
    """Build a run's dotted order from its start time, id and parent's order."""
    segment = start_time.strftime(DOTTED_ORDER_TIME_FORMAT) + str(run_id)
    if parent_dotted_order:
        return f"{parent_dotted_order}.{segment}"
    return segment


def parse_dotted_order(dotted_order: str) -> list[tuple[datetime, str]]:
    """Split a dotted order into ``(start_time, run_id)`` pairs, root first."""
    parts = dotted_order.split(".")
    return [
        (
            datetime.strptime(part[:-TIMESTAMP_LENGTH], DOTTED_ORDER_TIME_FORMAT)
            .replace(tzinfo=timezone.utc),
            part[-TIMESTAMP_LENGTH:],
        )
        for part in parts
    ]


def _validate_run_type(run_type: Union[str, rt_schemas.RunTypeEnum]) -> str:
    value = run_type.value if isinstance(run_type, rt_schemas.RunTypeEnum) else run_type
    if value not in rt_schemas.VALID_RUN_TYPES:
        raise rt_utils.ValidationError(
            f"Invalid run_type {run_type!r}. Must be one of:"
            f" {', '.join(rt_schemas.VALID_RUN_TYPES)}"
        )
    return value


def _compact(d: dict[str, Any]) -> dict[str, Any]:
    return {
        k: v
        for k, v in d.items()
        if v is not None and not (isinstance(v, (dict, list)) and not v)
    }


class Run:
    """One recorded span of a traced operation.

    ``id``, ``trace_id`` and ``dotted_order`` are fixed at construction. The
    content fields stay mutable until the run is serialized for sending.
    """

    __slots__ = (
        "id",
        "name",
        "run_type",
        "inputs",
        "outputs",
        "error",
        "parent_run_id",
        "trace_id",
        "dotted_order",
        "session_name",
        "session_id",
        "reference_example_id",
        "tenant_id",
        "start_time",
        "end_time",
        "metadata",
        "tags",
        "extra",
        "events",
    )

    def __init__(
        self,
        name: str,
        run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
        *,
        inputs: Optional[dict] = None,
        outputs: Optional[dict] = None,
        parent_run_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        parent_dotted_order: Optional[str] = None,
        session_name: Optional[str] = None,
        session_id: Optional[str] = None,
        reference_example_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        tags: Optional[list[str]] = None,
        extra: Optional[dict] = None,
        id: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> None:
        self.run_type = _validate_run_type(run_type)
        self.name = name

        start_time = start_time or rt_utils.utc_now()
        if parent_dotted_order:
            # A child never sorts before its parent
            parent_start = parse_dotted_order(parent_dotted_order)[-1][0]
            if start_time < parent_start:
                start_time = parent_start
        self.start_time = start_time
        self.end_time: Optional[datetime] = None

        self.id = str(id) if id is not None else str(uuid7_from_datetime(start_time))
        self.trace_id = str(trace_id) if trace_id is not None else self.id
        self.parent_run_id = str(parent_run_id) if parent_run_id is not None else None
        self.dotted_order = create_dotted_order(
            start_time, self.id, parent_dotted_order
        )

        self.inputs = inputs if inputs is not None else {}
        self.outputs = outputs
        self.error: Optional[str] = None
        self.session_name = session_name
        self.session_id = session_id
        self.reference_example_id = reference_example_id
        self.tenant_id = tenant_id
        self.metadata = dict(metadata) if metadata else {}
        self.tags = list(tags) if tags else []
        self.extra = dict(extra) if extra else {}
        self.events: list[dict] = []

    def __repr__(self) -> str:
        return (
            f"Run(id={self.id!r}, name={self.name!r}, run_type={self.run_type!r},"
            f" trace_id={self.trace_id!r}, parent_run_id={self.parent_run_id!r})"
        )

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def finish(self, outputs: Optional[dict] = None, error: Any = None) -> None:
        """Mark the run as ended, recording outputs and/or an error."""
        self.end_time = rt_utils.utc_now()
        if outputs is not None:
            self.outputs = outputs
        if error is not None:
            self.error = rt_utils.format_error(error)

    def add_metadata(
        self, metadata: Optional[Mapping[str, Any]] = None, **kwargs: Any
    ) -> None:
        """Merge keys into the run's metadata."""
        if metadata:
            self.metadata.update(metadata)
        if kwargs:
            self.metadata.update(kwargs)

    def add_tags(self, *tags: Union[str, Iterable[str]]) -> None:
        for tag in tags:
            if isinstance(tag, str):
                self.tags.append(tag)
            else:
                self.tags.extend(tag)

    def add_event(
        self, name: str, time: Optional[datetime] = None, **fields: Any
    ) -> None:
        self.events.append(
            {
                "name": name,
                "time": rt_utils.format_timestamp(time or rt_utils.utc_now()),
                **fields,
            }
        )

    def _extra_metadata(self) -> dict:
        return self.extra.setdefault("metadata", {})

    def set_token_usage(
        self,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> None:
        """Record LLM token counts; the total is derived when not given."""
        if (
            total_tokens is None
            and input_tokens is not None
            and output_tokens is not None
        ):
            total_tokens = input_tokens + output_tokens
        self._extra_metadata()["usage_metadata"] = _compact(
            {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": total_tokens,
            }
        )

    def set_model(self, model: str, provider: Optional[str] = None) -> None:
        md = self._extra_metadata()
        md["ls_model_name"] = model
        if provider is not None:
            md["ls_provider"] = provider

    def set_streaming_metrics(
        self,
        time_to_first_token: Optional[float] = None,
        chunk_count: Optional[int] = None,
        tokens_per_second: Optional[float] = None,
    ) -> None:
        self._extra_metadata()["streaming_metrics"] = _compact(
            {
                "time_to_first_token_s": time_to_first_token,
                "chunk_count": chunk_count,
                "tokens_per_second": tokens_per_second,
            }
        )

    def to_dict(self) -> dict[str, Any]:
        """Full create payload. None and empty values are omitted."""
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "run_type": self.run_type,
                "inputs": self.inputs,
                "outputs": self.outputs,
                "error": self.error,
                "parent_run_id": self.parent_run_id,
                "trace_id": self.trace_id,
                "dotted_order": self.dotted_order,
                "session_name": self.session_name,
                "session_id": self.session_id,
                "reference_example_id": self.reference_example_id,
                "start_time": rt_utils.format_timestamp(self.start_time),
                "end_time": rt_utils.format_timestamp(self.end_time),
                "extra": self.extra,
                "events": self.events,
                "tags": self.tags,
                "metadata": self.metadata,
                "serialized": {"name": self.name},
            }
        )

    def to_update_dict(self) -> dict[str, Any]:
        """Patch payload: only the fields that can change after creation."""
        return _compact(
            {
                "id": self.id,
                "trace_id": self.trace_id,
                "parent_run_id": self.parent_run_id,
                "dotted_order": self.dotted_order,
                "end_time": rt_utils.format_timestamp(self.end_time),
                "outputs": self.outputs,
                "error": self.error,
                "events": self.events,
                "extra": self.extra,
                "tags": self.tags,
                "metadata": self.metadata,
            }
        )


def _sanitize_outputs(result: Any) -> Optional[dict]:
    if result is None or isinstance(result, (Run, RunTree)):
        return None
    return {"result": result}


class RunTree:
    """Builds a run from the ambient context and drives its lifecycle.

    Resolution order:
        - parent: explicit ``parent_run_id``, else the current run.
        - tenant: explicit ``tenant_id``, else the parent's, else the
          tracer's default.
        - project: the parent's for any child; ``project`` only applies to
          roots, falling back to the tracer's default.
        - trace id and dotted order: always the parent's.

    Inside an evaluation scope every run is linked to the experiment and the
    root run also to the example.
    """

    __slots__ = ("run", "tracer", "_posted_start", "_posted_end")

    def __init__(
        self,
        name: str,
        run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
        *,
        inputs: Optional[dict] = None,
        metadata: Optional[dict] = None,
        tags: Optional[list[str]] = None,
        extra: Optional[dict] = None,
        parent_run_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        project: Optional[str] = None,
        tracer: Optional[Tracer] = None,
        parent: Optional[Run] = None,
    ) -> None:
        if tracer is None:
            from runtracer.tracer import get_tracer

            tracer = get_tracer()
        self.tracer = tracer
        config = tracer.config

        structural_parent = parent if parent is not None else _context.current_run()
        effective_parent_id = parent_run_id or (
            structural_parent.id if structural_parent is not None else None
        )
        effective_tenant_id = tenant_id or (
            structural_parent.tenant_id if structural_parent is not None else None
        )
        if effective_tenant_id is None:
            effective_tenant_id = config.tenant_id
        if structural_parent is not None:
            effective_project = structural_parent.session_name
        else:
            effective_project = project or config.project

        eval_ctx = _context.evaluation_context()
        session_id = eval_ctx.experiment_id if eval_ctx is not None else None
        reference_example_id = (
            eval_ctx.example_id
            if eval_ctx is not None and effective_parent_id is None
            else None
        )

        self.run = Run(
            name,
            run_type,
            inputs=inputs,
            parent_run_id=effective_parent_id,
            trace_id=structural_parent.trace_id if structural_parent else None,
            parent_dotted_order=(
                structural_parent.dotted_order if structural_parent else None
            ),
            session_name=effective_project,
            session_id=session_id,
            reference_example_id=reference_example_id,
            tenant_id=effective_tenant_id,
            metadata=metadata,
            tags=tags,
            extra=extra,
        )
        if eval_ctx is not None and effective_parent_id is None:
            _context.register_evaluation_root_run(self.run.id, effective_tenant_id)
        self._posted_start = False
        self._posted_end = False

    def __repr__(self) -> str:
        return f"RunTree({self.run!r})"

    @property
    def id(self) -> str:
        return self.run.id

    @property
    def parent_run_id(self) -> Optional[str]:
        return self.run.parent_run_id

    @property
    def trace_id(self) -> str:
        return self.run.trace_id

    @property
    def dotted_order(self) -> str:
        return self.run.dotted_order

    @property
    def tenant_id(self) -> Optional[str]:
        return self.run.tenant_id

    @property
    def session_name(self) -> Optional[str]:
        return self.run.session_name

    def post_start(self) -> None:
        """Enqueue the create snapshot once."""
        if self._posted_start or not self.tracer.tracing_enabled:
            return
        self.tracer.batch_processor.enqueue_create(self.run)
        self._posted_start = True

    def post_end(self) -> None:
        """Enqueue the update snapshot once."""
        if self._posted_end or not self.tracer.tracing_enabled:
            return
        self.tracer.batch_processor.enqueue_update(self.run)
        self._posted_end = True

    def execute(self, func: Callable[[Run], T]) -> T:
        """Run ``func`` as this run and return its result unchanged.

        Exceptions are recorded on the run and re-raised as-is.
        """
        if not self.tracer.tracing_enabled:
            return func(self.run)
        try:
            self.post_start()
            with _context.with_run(self.run):
                result = func(self.run)
            self.run.finish(outputs=_sanitize_outputs(result))
            return result
        except BaseException as e:
            self.run.finish(error=e)
            raise
        finally:
            self.post_end()

    async def aexecute(self, func: Callable[[Run], Awaitable[T]]) -> T:
        """Async counterpart of :meth:`execute` for coroutine functions."""
        if not self.tracer.tracing_enabled:
            return await func(self.run)
        try:
            self.post_start()
            with _context.with_run(self.run):
                result = await func(self.run)
            self.run.finish(outputs=_sanitize_outputs(result))
            return result
        except BaseException as e:
            self.run.finish(error=e)
            raise
        finally:
            self.post_end()

    def create_child(
        self,
        name: str,
        run_type: Union[str, rt_schemas.RunTypeEnum] = "chain",
        **kwargs: Any,
    ) -> RunTree:
        """Create a run tree parented to this one, regardless of context."""
        kwargs.pop("parent_run_id", None)
        kwargs.pop("parent", None)
        kwargs.setdefault("tracer", self.tracer)
        return RunTree(
            name,
            run_type,
            parent_run_id=self.run.id,
            parent=self.run,
            **kwargs,
        )

    # Delegated mutators; each returns None.

    def set_inputs(self, inputs: dict) -> None:
        self.run.inputs = inputs

    def set_outputs(self, outputs: dict) -> None:
        self.run.outputs = outputs

    def add_metadata(
        self, metadata: Optional[Mapping[str, Any]] = None, **kwargs: Any
    ) -> None:
        self.run.add_metadata(metadata, **kwargs)

    def add_tags(self, *tags: Union[str, Iterable[str]]) -> None:
        self.run.add_tags(*tags)

    def add_event(
        self, name: str, time: Optional[datetime] = None, **fields: Any
    ) -> None:
        self.run.add_event(name, time, **fields)

    def set_token_usage(
        self,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        total_tokens: Optional[int] = None,
    ) -> None:
        self.run.set_token_usage(input_tokens, output_tokens, total_tokens)

    def set_model(self, model: str, provider: Optional[str] = None) -> None:
        self.run.set_model(model, provider)

    def set_streaming_metrics(
        self,
        time_to_first_token: Optional[float] = None,
        chunk_count: Optional[int] = None,
        tokens_per_second: Optional[float] = None,
    ) -> None:
        self.run.set_streaming_metrics(
            time_to_first_token, chunk_count, tokens_per_second
        )
