"""Per-execution-unit run stack and evaluation scope, backed by ContextVars.

Each OS thread starts with an empty stack. An asyncio task starts from a
snapshot of its creator's stack; pushes and pops inside the task stay local
to it because the stack is an immutable tuple replaced on every change.
"""

from __future__ import annotations

import contextlib
import contextvars
import threading
from collections.abc import Generator
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from runtracer.run_trees import Run

_RUN_STACK = contextvars.ContextVar[tuple["Run", ...]]("_RUN_STACK", default=())
_EVALUATION = contextvars.ContextVar[Optional["EvaluationContext"]](
    "_EVALUATION", default=None
)


class EvaluationContext:
    """Experiment/example linkage for runs created inside an evaluation scope.

    The first root run posted inside the scope is recorded so the experiment
    runner can fetch it and attach feedback.
    """

    __slots__ = (
        "experiment_id",
        "example_id",
        "root_run_id",
        "root_run_tenant_id",
        "_lock",
    )

    def __init__(self, experiment_id: str, example_id: str) -> None:
        self.experiment_id = experiment_id
        self.example_id = example_id
        self.root_run_id: Optional[str] = None
        self.root_run_tenant_id: Optional[str] = None
        self._lock = threading.Lock()

    def register_root_run(self, run_id: str, tenant_id: Optional[str]) -> bool:
        with self._lock:
            if self.root_run_id is not None:
                return False
            self.root_run_id = run_id
            self.root_run_tenant_id = tenant_id
            return True

    def __repr__(self) -> str:
        return (
            f"EvaluationContext(experiment_id={self.experiment_id!r},"
            f" example_id={self.example_id!r}, root_run_id={self.root_run_id!r})"
        )


# Run stack


def push(run: Run) -> None:
    _RUN_STACK.set(_RUN_STACK.get() + (run,))


def pop() -> Optional[Run]:
    stack = _RUN_STACK.get()
    if not stack:
        return None
    _RUN_STACK.set(stack[:-1])
    return stack[-1]


def current_run() -> Optional[Run]:
    stack = _RUN_STACK.get()
    return stack[-1] if stack else None


def current_parent_run_id() -> Optional[str]:
    run = current_run()
    return run.id if run is not None else None


def root_run() -> Optional[Run]:
    stack = _RUN_STACK.get()
    return stack[0] if stack else None


def depth() -> int:
    return len(_RUN_STACK.get())


def is_active() -> bool:
    return bool(_RUN_STACK.get())


def clear() -> None:
    """Reset the run stack and any evaluation scope for this execution unit."""
    _RUN_STACK.set(())
    _EVALUATION.set(None)


@contextlib.contextmanager
def with_run(run: Run) -> Generator[Run, None, None]:
    """Make ``run`` the current run for the duration of the block."""
    previous = _RUN_STACK.get()
    token = _RUN_STACK.set(previous + (run,))
    try:
        yield run
    finally:
        try:
            _RUN_STACK.reset(token)
        except ValueError:
            # The block resumed in a different Context (e.g. a generator
            # finalized elsewhere); tokens cannot cross contexts.
            _RUN_STACK.set(previous)


# Evaluation scope


def evaluation_context() -> Optional[EvaluationContext]:
    return _EVALUATION.get()


def is_evaluating() -> bool:
    return _EVALUATION.get() is not None


@contextlib.contextmanager
def with_evaluation(
    experiment_id: str, example_id: str
) -> Generator[EvaluationContext, None, None]:
    """Link every run created in the block to an experiment and example.

    The scope is cleared on exit, including when the block raises. The
    yielded holder stays readable after exit.
    """
    ctx = EvaluationContext(str(experiment_id), str(example_id))
    token = _EVALUATION.set(ctx)
    try:
        yield ctx
    finally:
        try:
            _EVALUATION.reset(token)
        except ValueError:
            _EVALUATION.set(None)


def register_evaluation_root_run(run_id: str, tenant_id: Optional[str]) -> bool:
    """Record the scope's root run. The first caller wins; no-op outside a scope."""
    ctx = _EVALUATION.get()
    if ctx is None:
        return False
    return ctx.register_root_run(run_id, tenant_id)


def evaluation_root_run_id() -> Optional[str]:
    ctx = _EVALUATION.get()
    return ctx.root_run_id if ctx is not None else None


def evaluation_root_run_tenant_id() -> Optional[str]:
    ctx = _EVALUATION.get()
    return ctx.root_run_tenant_id if ctx is not None else None
