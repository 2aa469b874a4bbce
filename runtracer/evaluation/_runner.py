"""Dataset experiments: run a target per example and attach evaluator feedback."""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional, Union

from typing_extensions import TypedDict

from runtracer import schemas as rt_schemas
from runtracer import utils as rt_utils
from runtracer._internal import _context
from runtracer.evaluation.evaluator import EVALUATOR_T, normalize_evaluator_output
from runtracer.run_helpers import trace
from runtracer.tracer import Tracer, get_tracer, tracing_context

if TYPE_CHECKING:
    from runtracer.client import Client

logger = logging.getLogger(__name__)

TARGET_T = Callable[[rt_schemas.Example], Any]
EVALUATORS_T = Union[Mapping[str, EVALUATOR_T], Sequence[EVALUATOR_T]]


class FeedbackOutcome(TypedDict, total=False):
    score: rt_schemas.SCORE_TYPE
    value: rt_schemas.VALUE_TYPE
    comment: Optional[str]
    success: bool
    skipped: bool
    error: str


class ExperimentResultRow(TypedDict):
    example_id: str
    run_id: Optional[str]
    status: Literal["success", "error"]
    error: Optional[str]
    outputs: Any
    feedback: Optional[dict[str, FeedbackOutcome]]


@dataclasses.dataclass
class ExperimentResults:
    """Summary of one experiment over a dataset."""

    experiment_id: str
    experiment_name: str
    results: list[ExperimentResultRow] = dataclasses.field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for row in self.results if row["status"] == "success")

    @property
    def failed(self) -> int:
        return sum(1 for row in self.results if row["status"] == "error")

    def __iter__(self) -> Iterator[ExperimentResultRow]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __repr__(self) -> str:
        return (
            f"<ExperimentResults {self.experiment_name} total={self.total}"
            f" succeeded={self.succeeded} failed={self.failed}>"
        )


def _resolve_evaluators(
    evaluators: Optional[EVALUATORS_T],
) -> list[tuple[str, EVALUATOR_T]]:
    if not evaluators:
        return []
    if isinstance(evaluators, Mapping):
        return [(str(key), fn) for key, fn in evaluators.items()]
    return [(getattr(fn, "__name__", repr(fn)), fn) for fn in evaluators]


def evaluate(
    target: TARGET_T,
    *,
    dataset_id: rt_schemas.ID_TYPE,
    experiment_name: str,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
    evaluators: Optional[EVALUATORS_T] = None,
    tenant_id: Optional[str] = None,
    tracer: Optional[Tracer] = None,
) -> ExperimentResults:
    """Run ``target`` on every example of a dataset as a new experiment.

    Each call is traced as a root run linked to the experiment and its
    example. Evaluators are then called with keyword arguments ``outputs``,
    ``reference_outputs``, ``inputs`` and ``run`` (the run as read back from
    the backend), and each result is posted as feedback on that run.

    A failing example or evaluator is recorded in the results and never
    stops the experiment.

    Args:
        target: Called with each :class:`~runtracer.schemas.Example`.
        dataset_id: Dataset whose examples to run.
        experiment_name: Name of the experiment to create.
        description: Experiment description.
        metadata: Stored on the experiment.
        evaluators: Mapping of feedback key to evaluator, or a sequence of
            evaluators keyed by their ``__name__``.
        tenant_id: Tenant owning the dataset, experiment and runs.
        tracer: Tracer to use instead of the ambient one.

    Returns:
        ExperimentResults: Per-example rows plus totals.
    """
    runner = _ExperimentRunner(
        target,
        dataset_id=dataset_id,
        experiment_name=experiment_name,
        description=description,
        metadata=metadata,
        evaluators=_resolve_evaluators(evaluators),
        tenant_id=tenant_id,
        tracer=tracer or get_tracer(),
    )
    return runner.run()


class _ExperimentRunner:
    read_run_retries = 3
    read_run_delay = 1.0

    def __init__(
        self,
        target: TARGET_T,
        *,
        dataset_id: rt_schemas.ID_TYPE,
        experiment_name: str,
        description: Optional[str],
        metadata: Optional[dict],
        evaluators: list[tuple[str, EVALUATOR_T]],
        tenant_id: Optional[str],
        tracer: Tracer,
    ) -> None:
        self.target = target
        self.dataset_id = dataset_id
        self.experiment_name = experiment_name
        self.description = description
        self.metadata = metadata
        self.evaluators = evaluators
        self.tracer = tracer
        self.tenant_id = tenant_id or tracer.config.tenant_id

    @property
    def client(self) -> Client:
        return self.tracer.client

    def run(self) -> ExperimentResults:
        examples = self.client.list_examples(self.dataset_id, tenant_id=self.tenant_id)
        experiment = self.client.create_experiment(
            self.experiment_name,
            self.dataset_id,
            description=self.description,
            metadata=self.metadata,
            tenant_id=self.tenant_id,
        )
        results = ExperimentResults(
            experiment_id=experiment.id, experiment_name=self.experiment_name
        )
        for example in examples:
            results.results.append(self._run_example(example, experiment.id))
        self.tracer.flush()
        self.client.close_experiment(experiment.id, tenant_id=self.tenant_id)
        logger.info(f"Finished experiment {self.experiment_name}: {results!r}")
        return results

    def _run_example(
        self, example: rt_schemas.Example, experiment_id: str
    ) -> ExperimentResultRow:
        try:
            with tracing_context(self.tracer):
                with _context.with_evaluation(experiment_id, example.id) as scope:
                    outputs = trace(
                        "Target",
                        lambda _run: self.target(example),
                        inputs=example.inputs,
                        tenant_id=self.tenant_id,
                        tracer=self.tracer,
                    )
        except Exception as e:
            logger.error(f"Error running target on example {example.id}: {e!r}")
            return ExperimentResultRow(
                example_id=example.id,
                run_id=None,
                status="error",
                error=str(e),
                outputs=None,
                feedback=None,
            )
        run_id = scope.root_run_id
        try:
            feedback = self._run_evaluators(
                example, outputs, run_id, scope.root_run_tenant_id
            )
        except Exception as e:
            logger.error(
                f"Error evaluating run {run_id} on example {example.id}: {e!r}"
            )
            return ExperimentResultRow(
                example_id=example.id,
                run_id=run_id,
                status="success",
                error=str(e),
                outputs=outputs,
                feedback=None,
            )
        return ExperimentResultRow(
            example_id=example.id,
            run_id=run_id,
            status="success",
            error=None,
            outputs=outputs,
            feedback=feedback,
        )

    def _run_evaluators(
        self,
        example: rt_schemas.Example,
        outputs: Any,
        run_id: Optional[str],
        run_tenant_id: Optional[str],
    ) -> Optional[dict[str, FeedbackOutcome]]:
        if not self.evaluators or run_id is None or not self.tracer.tracing_enabled:
            return None
        self.tracer.flush()
        run = self._read_run_with_retry(run_id, run_tenant_id)
        return {
            key: self._apply_evaluator(
                key, evaluator, example, outputs, run_id, run, run_tenant_id
            )
            for key, evaluator in self.evaluators
        }

    def _read_run_with_retry(self, run_id: str, tenant_id: Optional[str]) -> dict:
        # The backend indexes batch-ingested runs with some lag.
        attempt = 0
        while True:
            try:
                return self.client.read_run(run_id, tenant_id=tenant_id)
            except rt_utils.TransportError as e:
                if e.status_code != 404 or attempt >= self.read_run_retries:
                    raise
                attempt += 1
                logger.debug(
                    f"Run {run_id} not found yet; retrying in {self.read_run_delay}s"
                )
                time.sleep(self.read_run_delay)

    def _apply_evaluator(
        self,
        key: str,
        evaluator: EVALUATOR_T,
        example: rt_schemas.Example,
        outputs: Any,
        run_id: str,
        run: dict,
        tenant_id: Optional[str],
    ) -> FeedbackOutcome:
        try:
            response = evaluator(
                outputs=outputs,
                reference_outputs=example.outputs,
                inputs=example.inputs,
                run=run,
            )
            result = normalize_evaluator_output(key, response)
            if result is None:
                return FeedbackOutcome(score=None, success=True, skipped=True)
            self.client.create_feedback(
                run_id, result.key, tenant_id=tenant_id, **result.feedback_kwargs()
            )
        except Exception as e:
            logger.error(
                f"Error running evaluator {key!r} on run {run_id}: {e!r}"
            )
            return FeedbackOutcome(score=None, success=False, error=str(e))
        return FeedbackOutcome(
            score=result.score,
            value=result.value,
            comment=result.comment,
            success=True,
        )
