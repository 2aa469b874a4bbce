"""Run a target over a dataset and score each run."""

from typing import TYPE_CHECKING, Any, List

if TYPE_CHECKING:
    from runtracer.evaluation._runner import (
        ExperimentResultRow,
        ExperimentResults,
        evaluate,
    )
    from runtracer.evaluation.evaluator import EvaluationResult


def __getattr__(name: str) -> Any:
    if name == "evaluate":
        from runtracer.evaluation._runner import evaluate

        return evaluate
    elif name == "ExperimentResults":
        from runtracer.evaluation._runner import ExperimentResults

        return ExperimentResults
    elif name == "ExperimentResultRow":
        from runtracer.evaluation._runner import ExperimentResultRow

        return ExperimentResultRow
    elif name == "EvaluationResult":
        from runtracer.evaluation.evaluator import EvaluationResult

        return EvaluationResult

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "evaluate",
    "EvaluationResult",
    "ExperimentResults",
    "ExperimentResultRow",
]


def __dir__() -> List[str]:
    return __all__
