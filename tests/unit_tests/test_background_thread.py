import logging
import threading
import time
from typing import Callable
from unittest.mock import MagicMock

import pytest

from runtracer import utils as rt_utils
from runtracer._internal._background_thread import (
    _RUNNING_PROCESSORS,
    BatchProcessor,
    _shutdown_at_exit,
)
from runtracer._internal._operations import (
    SerializedRunOperation,
    group_operations_by_tenant,
    serialize_run,
)
from runtracer.client import Client
from runtracer.run_trees import Run


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _sent(client: MagicMock) -> list[tuple]:
    """(tenant, operation, run id) for everything handed to the transport."""
    sent = []
    for call in client.batch_ingest_runs.call_args_list:
        tenant = call.kwargs["tenant_id"]
        for op in call.kwargs["create"] + call.kwargs["update"]:
            sent.append((tenant, op.operation, op.id))
    return sent


@pytest.fixture
def client() -> MagicMock:
    return MagicMock(spec=Client)


@pytest.fixture
def processor(client: MagicMock):
    processor = BatchProcessor(client, flush_interval=60, shutdown_timeout=2.0)
    yield processor
    processor.shutdown(timeout=1.0)


def test_serialize_run_snapshots_views() -> None:
    run = Run("op", inputs={"q": 1}, tenant_id="t-1")
    create = serialize_run(run, "post")
    run.finish(outputs={"a": 2})
    update = serialize_run(run, "patch")
    assert create.operation == "post"
    assert create.tenant_id == "t-1"
    assert create.to_dict()["inputs"] == {"q": 1}
    assert "end_time" not in create.to_dict()
    assert update.operation == "patch"
    assert update.to_dict()["outputs"] == {"a": 2}
    assert "inputs" not in update.to_dict()
    assert update.seq > create.seq


def test_group_operations_by_tenant_preserves_order() -> None:
    runs = [Run(f"r{i}", tenant_id=t) for i, t in enumerate(["a", "b", "a", None])]
    creates = [serialize_run(r, "post") for r in runs]
    updates = [serialize_run(runs[2], "patch")]
    grouped = group_operations_by_tenant(creates, updates)
    assert set(grouped) == {"a", "b", None}
    a_creates, a_updates = grouped["a"]
    assert [op.id for op in a_creates] == [runs[0].id, runs[2].id]
    assert [op.id for op in a_updates] == [runs[2].id]
    assert grouped["b"][1] == []
    assert [op.id for op in grouped[None][0]] == [runs[3].id]


def test_operation_equality_ignores_sequence() -> None:
    op = SerializedRunOperation("post", "id-1", "id-1", b"{}", seq=1)
    assert op == SerializedRunOperation("post", "id-1", "id-1", b"{}", seq=2)
    assert op != SerializedRunOperation("patch", "id-1", "id-1", b"{}", seq=1)


def test_creates_sent_before_updates(processor: BatchProcessor, client) -> None:
    run = Run("op", tenant_id="t-1")
    processor.enqueue_create(run)
    run.finish(outputs={"result": 1})
    processor.enqueue_update(run)
    processor.shutdown()

    client.batch_ingest_runs.assert_called_once()
    kwargs = client.batch_ingest_runs.call_args.kwargs
    assert kwargs["tenant_id"] == "t-1"
    assert [op.operation for op in kwargs["create"]] == ["post"]
    assert [op.operation for op in kwargs["update"]] == ["patch"]
    assert kwargs["create"][0].id == run.id
    assert kwargs["update"][0].to_dict()["outputs"] == {"result": 1}


def test_one_request_per_tenant(processor: BatchProcessor, client) -> None:
    runs = {t: Run("op", tenant_id=t) for t in ("tenant-a", "tenant-b", None)}
    for run in runs.values():
        processor.enqueue_create(run)
    processor.shutdown()

    assert client.batch_ingest_runs.call_count == 3
    by_tenant = {
        call.kwargs["tenant_id"]: call.kwargs
        for call in client.batch_ingest_runs.call_args_list
    }
    assert set(by_tenant) == set(runs)
    for tenant, run in runs.items():
        assert [op.id for op in by_tenant[tenant]["create"]] == [run.id]
        assert by_tenant[tenant]["update"] == []


def test_failed_tenant_is_retried_without_blocking_others(
    processor: BatchProcessor, client, caplog
) -> None:
    attempts = {"tenant-a": 0}

    def batch_ingest_runs(create, update, tenant_id):
        if tenant_id == "tenant-a":
            attempts["tenant-a"] += 1
            if attempts["tenant-a"] == 1:
                raise rt_utils.TransportError("service unavailable", 503)

    client.batch_ingest_runs.side_effect = batch_ingest_runs
    run_a = Run("a", tenant_id="tenant-a")
    run_b = Run("b", tenant_id="tenant-b")
    with caplog.at_level(logging.WARNING, logger="runtracer.client"):
        processor.enqueue_create(run_a)
        processor.enqueue_create(run_b)
        processor.shutdown()

    calls = [c.kwargs["tenant_id"] for c in client.batch_ingest_runs.call_args_list]
    assert calls.count("tenant-a") == 2
    assert calls.count("tenant-b") == 1
    assert processor.pending_count() == 0
    warnings = [r for r in caplog.records if "Failed to submit" in r.getMessage()]
    assert len(warnings) == 1
    assert warnings[0].levelno == logging.WARNING
    assert "tenant-a" in warnings[0].getMessage()


def test_non_retryable_failure_logs_error(
    processor: BatchProcessor, client, caplog
) -> None:
    client.batch_ingest_runs.side_effect = rt_utils.TransportError("bad", 400)
    with caplog.at_level(logging.WARNING, logger="runtracer.client"):
        processor.enqueue_create(Run("op"))
        processor.shutdown()
    failures = [r for r in caplog.records if "Failed to submit" in r.getMessage()]
    assert failures
    assert all(r.levelno == logging.ERROR for r in failures)
    # Entries stay buffered for a later attempt.
    assert processor.pending_count() == 1


def test_failed_entries_keep_their_place(processor: BatchProcessor, client) -> None:
    client.batch_ingest_runs.side_effect = rt_utils.TransportError("down", 503)
    first = Run("first")
    processor.enqueue_create(first)
    processor.shutdown()
    assert processor.pending_count() == 1

    client.batch_ingest_runs.side_effect = None
    client.batch_ingest_runs.reset_mock()
    second = Run("second")
    processor.enqueue_create(second)
    processor.shutdown()
    ids = [op.id for op in client.batch_ingest_runs.call_args.kwargs["create"]]
    assert ids == [first.id, second.id]


def test_buffer_cap_drops_oldest(client, caplog) -> None:
    processor = BatchProcessor(
        client, flush_interval=60, max_pending_entries=1, shutdown_timeout=2.0
    )
    old, new = Run("old"), Run("new")
    with caplog.at_level(logging.WARNING, logger="runtracer.client"):
        processor.enqueue_create(old)
        processor.enqueue_create(new)
        processor.shutdown()
    assert _sent(client) == [(None, "post", new.id)]
    assert any("buffer is full" in r.getMessage() for r in caplog.records)


def test_buffer_cap_counts_only_run_entries(client, caplog) -> None:
    in_transport, release = threading.Event(), threading.Event()

    def batch_ingest_runs(create, update, tenant_id):
        in_transport.set()
        release.wait(2.0)

    client.batch_ingest_runs.side_effect = batch_ingest_runs
    processor = BatchProcessor(
        client,
        batch_size=1,
        flush_interval=60,
        max_pending_entries=2,
        shutdown_timeout=2.0,
    )
    x, a, b = Run("x"), Run("a"), Run("b")
    flusher = threading.Thread(target=processor.flush)
    with caplog.at_level(logging.WARNING, logger="runtracer.client"):
        try:
            processor.enqueue_create(x)
            assert in_transport.wait(2.0)
            processor.enqueue_create(a)
            flusher.start()
            processor.enqueue_create(b)
            assert processor.pending_count() == 2
        finally:
            release.set()
            if flusher.is_alive():
                flusher.join(2.0)
            processor.shutdown(timeout=1.0)
    sent_ids = [op_id for _, _, op_id in _sent(client)]
    assert sorted(sent_ids) == sorted([x.id, a.id, b.id])
    assert not any("buffer is full" in r.getMessage() for r in caplog.records)


def test_non_run_entries_are_rejected(processor: BatchProcessor, client, caplog):
    with caplog.at_level(logging.ERROR, logger="runtracer.client"):
        processor.enqueue_create({"id": "not-a-run"})  # type: ignore[arg-type]
    assert not processor.running
    assert processor.pending_count() == 0
    assert any("expected a Run" in r.getMessage() for r in caplog.records)
    client.batch_ingest_runs.assert_not_called()


def test_payload_is_snapshotted_at_enqueue(processor: BatchProcessor, client) -> None:
    run = Run("op", inputs={"q": 1})
    processor.enqueue_create(run)
    run.inputs["q"] = 2
    run.add_tags("late")
    processor.shutdown()
    payload = client.batch_ingest_runs.call_args.kwargs["create"][0].to_dict()
    assert payload["inputs"] == {"q": 1}
    assert "tags" not in payload


def test_concurrent_flushes_never_overlap(processor: BatchProcessor, client) -> None:
    lock = threading.Lock()
    state = {"active": 0, "max_active": 0}

    def batch_ingest_runs(create, update, tenant_id):
        with lock:
            state["active"] += 1
            state["max_active"] = max(state["max_active"], state["active"])
        time.sleep(0.005)
        with lock:
            state["active"] -= 1

    client.batch_ingest_runs.side_effect = batch_ingest_runs
    runs = [Run(f"r{i}") for i in range(40)]

    def producer(chunk: list[Run]) -> None:
        for run in chunk:
            processor.enqueue_create(run)
            processor.flush()

    threads = [
        threading.Thread(target=producer, args=(runs[i::8],)) for i in range(8)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    processor.shutdown()

    assert state["max_active"] == 1
    sent_ids = [op_id for _, _, op_id in _sent(client)]
    assert sorted(sent_ids) == sorted(run.id for run in runs)


def test_start_and_shutdown_are_idempotent(processor: BatchProcessor, client) -> None:
    assert processor.start() is True
    assert processor.start() is False
    assert processor.running
    processor.shutdown()
    processor.shutdown()
    assert not processor.running

    # Restart after shutdown still delivers.
    assert processor.start() is True
    run = Run("after-restart")
    processor.enqueue_create(run)
    processor.shutdown()
    assert _sent(client) == [(None, "post", run.id)]


def test_enqueue_starts_processor(processor: BatchProcessor) -> None:
    assert not processor.running
    processor.enqueue_create(Run("op"))
    assert processor.running


def test_timer_flushes_periodically(client) -> None:
    processor = BatchProcessor(client, flush_interval=0.05)
    try:
        run = Run("op")
        processor.enqueue_create(run)
        assert _wait_for(lambda: client.batch_ingest_runs.called)
        assert _sent(client) == [(None, "post", run.id)]
    finally:
        processor.shutdown(timeout=1.0)


def test_batch_size_triggers_flush(client) -> None:
    processor = BatchProcessor(client, batch_size=2, flush_interval=60)
    try:
        run = Run("op")
        processor.enqueue_create(run)
        run.finish()
        processor.enqueue_update(run)
        assert _wait_for(lambda: client.batch_ingest_runs.called)
        assert sorted(op for _, op, _ in _sent(client)) == ["patch", "post"]
    finally:
        processor.shutdown(timeout=1.0)


def test_flush_with_nothing_pending_is_a_noop(processor: BatchProcessor, client):
    processor.flush()
    client.batch_ingest_runs.assert_not_called()


def test_flush_sends_everything_enqueued_before_it(
    processor: BatchProcessor, client
) -> None:
    runs = [Run(f"r{i}") for i in range(50)]
    for run in runs:
        processor.enqueue_create(run)
    processor.flush()
    assert sorted(op_id for _, _, op_id in _sent(client)) == sorted(
        run.id for run in runs
    )
    assert processor.pending_count() == 0


def test_exit_hook_tracks_running_processors(client) -> None:
    processor = BatchProcessor(client, flush_interval=60)
    assert processor not in _RUNNING_PROCESSORS
    run = Run("op")
    processor.enqueue_create(run)
    assert processor in _RUNNING_PROCESSORS

    _shutdown_at_exit()
    assert not processor.running
    assert processor not in _RUNNING_PROCESSORS
    assert _sent(client) == [(None, "post", run.id)]
