from __future__ import annotations

import itertools
import logging
from typing import TYPE_CHECKING, Any, Literal, Optional

from runtracer._internal._serde import dumps_json as _dumps_json
from runtracer._internal._serde import loads_json as _loads_json

if TYPE_CHECKING:
    from runtracer.run_trees import Run

logger = logging.getLogger(__name__)

# Global enqueue order, used to evict the oldest buffered entry first
_SEQUENCE = itertools.count()


class SerializedRunOperation:
    """A run snapshot frozen at enqueue time.

    ``payload`` holds the JSON bytes of the run's full view (``post``) or its
    update view (``patch``), so later mutations of the live run never leak
    into what gets sent.
    """

    operation: Literal["post", "patch"]
    id: str
    trace_id: str
    tenant_id: Optional[str]
    payload: bytes
    seq: int

    __slots__ = ("operation", "id", "trace_id", "tenant_id", "payload", "seq")

    def __init__(
        self,
        operation: Literal["post", "patch"],
        id: str,
        trace_id: str,
        payload: bytes,
        tenant_id: Optional[str] = None,
        seq: Optional[int] = None,
    ) -> None:
        self.operation = operation
        self.id = id
        self.trace_id = trace_id
        self.payload = payload
        self.tenant_id = tenant_id
        self.seq = next(_SEQUENCE) if seq is None else seq

    def to_dict(self) -> dict[str, Any]:
        return _loads_json(self.payload)

    def __repr__(self) -> str:
        return (
            f"SerializedRunOperation(operation={self.operation!r}, id={self.id!r},"
            f" tenant_id={self.tenant_id!r}, seq={self.seq})"
        )

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SerializedRunOperation) and (
            self.operation,
            self.id,
            self.trace_id,
            self.tenant_id,
            self.payload,
        ) == (
            other.operation,
            other.id,
            other.trace_id,
            other.tenant_id,
            other.payload,
        )


TenantBatch = tuple[list[SerializedRunOperation], list[SerializedRunOperation]]


def serialize_run(
    run: Run, operation: Literal["post", "patch"]
) -> SerializedRunOperation:
    run_dict = run.to_dict() if operation == "post" else run.to_update_dict()
    return SerializedRunOperation(
        operation=operation,
        id=run.id,
        trace_id=run.trace_id,
        payload=_dumps_json(run_dict),
        tenant_id=run.tenant_id,
    )


def group_operations_by_tenant(
    creates: list[SerializedRunOperation],
    updates: list[SerializedRunOperation],
) -> dict[Optional[str], TenantBatch]:
    """Partition pending operations per tenant, preserving enqueue order."""
    grouped: dict[Optional[str], TenantBatch] = {}
    for op in creates:
        grouped.setdefault(op.tenant_id, ([], []))[0].append(op)
    for op in updates:
        grouped.setdefault(op.tenant_id, ([], []))[1].append(op)
    return grouped
