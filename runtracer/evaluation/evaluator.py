"""Evaluation results and their normalization."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from runtracer.schemas import SCORE_TYPE, VALUE_TYPE

# Called as evaluator(outputs=..., reference_outputs=..., inputs=..., run=...)
EVALUATOR_T = Callable[..., Any]


class EvaluationResult(BaseModel):
    """Evaluation result."""

    model_config = ConfigDict(extra="forbid")

    key: str
    """The aspect, metric name, or label for this evaluation."""
    score: SCORE_TYPE = None
    """The numeric score for this evaluation."""
    value: VALUE_TYPE = None
    """The value for this evaluation, if not numeric."""
    comment: Optional[str] = None
    """An explanation regarding the evaluation."""

    def feedback_kwargs(self) -> Dict[str, Any]:
        return {"score": self.score, "value": self.value, "comment": self.comment}


def normalize_evaluator_output(key: str, result: Any) -> Optional[EvaluationResult]:
    """Coerce whatever an evaluator returned into an EvaluationResult.

    ``True``/``False`` become scores of 1.0/0.0, mappings are read for
    ``score``/``value``/``comment``, any other value is taken as the score.
    ``None`` means the evaluator skipped the example.
    """
    if result is None:
        return None
    if isinstance(result, EvaluationResult):
        return result
    if isinstance(result, bool):
        return EvaluationResult(key=key, score=1.0 if result else 0.0)
    if isinstance(result, Mapping):
        return EvaluationResult(
            key=result.get("key", key),
            score=result.get("score"),
            value=result.get("value"),
            comment=result.get("comment"),
        )
    return EvaluationResult(key=key, score=result)
