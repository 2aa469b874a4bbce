from __future__ import annotations

import atexit
import logging
import threading
import weakref
from collections import deque
from typing import TYPE_CHECKING, Literal, Optional, Union

from runtracer import utils as rt_utils
from runtracer._internal._operations import (
    SerializedRunOperation,
    group_operations_by_tenant,
    serialize_run,
)
from runtracer.run_trees import Run

if TYPE_CHECKING:
    from runtracer.client import Client

logger = logging.getLogger("runtracer.client")


class _Shutdown:
    """Queue sentinel that tells the worker to drain, flush and exit."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "<shutdown>"


_SHUTDOWN = _Shutdown()

QueueItem = Union[SerializedRunOperation, _Shutdown]

# Processors with live threads; shut down once at interpreter exit.
_RUNNING_PROCESSORS: weakref.WeakSet[BatchProcessor] = weakref.WeakSet()


@atexit.register
def _shutdown_at_exit() -> None:
    for processor in list(_RUNNING_PROCESSORS):
        if processor.running:
            processor.shutdown()


class BatchProcessor:
    """Buffers run snapshots and ships them to the backend in tenant batches.

    Producers serialize a run on their own thread and push it onto a FIFO
    queue. A worker thread moves queued snapshots into the pending buffers and
    flushes once ``batch_size`` entries are pending; a timer thread flushes
    every ``flush_interval`` seconds. A flush sends one request per tenant,
    creates before updates, and puts a failed tenant's entries back at the
    front of the buffers for the next attempt.

    With ``max_pending_entries`` set, queued plus pending entries are capped
    and the oldest entry (by enqueue order) is dropped on overflow.
    """

    def __init__(
        self,
        client: Client,
        *,
        batch_size: int = 100,
        flush_interval: float = 1.0,
        max_pending_entries: Optional[int] = None,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self.client = client
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.max_pending_entries = max_pending_entries
        self.shutdown_timeout = shutdown_timeout

        self._queue: deque[QueueItem] = deque()
        # Run operations in the queue; the sentinel is not counted.
        self._queued_entries = 0
        self._pending_creates: list[SerializedRunOperation] = []
        self._pending_updates: list[SerializedRunOperation] = []
        # Guards the queue and the pending buffers; never held across a
        # network call.
        self._buffer_lock = threading.Lock()
        self._queue_ready = threading.Condition(self._buffer_lock)
        # Serializes flushes.
        self._flush_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._timer: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._running

    def pending_count(self) -> int:
        """Entries not yet handed to the transport (queued plus pending)."""
        with self._buffer_lock:
            return self._buffered_count_locked()

    def start(self) -> bool:
        """Start the worker and timer threads. Returns False if already running."""
        with self._state_lock:
            if self._running:
                return False
            self._running = True
            self._stop_event = threading.Event()
            self._worker = threading.Thread(
                target=self._worker_loop,
                name="runtracer-batch-worker",
                daemon=True,
            )
            self._timer = threading.Thread(
                target=self._timer_loop,
                args=(self._stop_event,),
                name="runtracer-flush-timer",
                daemon=True,
            )
            self._worker.start()
            self._timer.start()
            _RUNNING_PROCESSORS.add(self)
        logger.debug("Batch processor started")
        return True

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the threads and flush whatever is still buffered.

        Safe to call more than once.
        """
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            worker = self._worker
            stop_event = self._stop_event
            _RUNNING_PROCESSORS.discard(self)
        stop_event.set()
        with self._queue_ready:
            self._queue.append(_SHUTDOWN)
            self._queue_ready.notify()
        timeout = self.shutdown_timeout if timeout is None else timeout
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                logger.warning(
                    f"Batch worker did not stop within {timeout}s;"
                    " flushing remaining entries from the caller."
                )
        self.flush()
        logger.debug("Batch processor stopped")

    def enqueue_create(self, run: Run) -> None:
        self._enqueue(run, "post")

    def enqueue_update(self, run: Run) -> None:
        self._enqueue(run, "patch")

    def _enqueue(self, run: Run, operation: Literal["post", "patch"]) -> None:
        if not isinstance(run, Run):
            logger.error(
                f"Cannot enqueue {type(run).__name__!r} for {operation}: expected a"
                " Run. The entry was dropped."
            )
            return
        try:
            serialized = serialize_run(run, operation)
        except Exception:
            logger.error(
                f"Failed to serialize run {run.id} for {operation}."
                " This does not affect your application's runtime.",
                exc_info=True,
            )
            return
        if not self._running:
            self.start()
        with self._queue_ready:
            self._queue.append(serialized)
            self._queued_entries += 1
            self._trim_locked()
            self._queue_ready.notify()

    def flush(self) -> None:
        """Send everything enqueued so far, one request per tenant.

        Every entry enqueued before the call has been handed to the transport
        (or put back after a failed send) when this returns.
        """
        with self._flush_lock:
            with self._buffer_lock:
                self._drain_queue_locked()
                creates, self._pending_creates = self._pending_creates, []
                updates, self._pending_updates = self._pending_updates, []
            if not creates and not updates:
                return
            batches = group_operations_by_tenant(creates, updates)
            for tenant_id, (tenant_creates, tenant_updates) in batches.items():
                try:
                    self.client.batch_ingest_runs(
                        create=tenant_creates,
                        update=tenant_updates,
                        tenant_id=tenant_id,
                    )
                except Exception as e:
                    self._log_send_failure(e, tenant_id, tenant_creates, tenant_updates)
                    self._requeue(tenant_creates, tenant_updates)

    def _worker_loop(self) -> None:
        while True:
            # Dequeue and buffer under one lock so a concurrent flush or
            # eviction never misses the entry in between.
            with self._queue_ready:
                while not self._queue:
                    self._queue_ready.wait()
                item = self._queue.popleft()
                if item is not _SHUTDOWN:
                    self._queued_entries -= 1
                    self._append_locked(item)
                should_flush = (
                    len(self._pending_creates) + len(self._pending_updates)
                    >= self.batch_size
                )
            if item is _SHUTDOWN:
                if self._running and self._worker is threading.current_thread():
                    # Stale sentinel from a previous shutdown; we were restarted.
                    continue
                try:
                    self.flush()
                except Exception:
                    logger.error(
                        "Final flush from the batch worker failed.", exc_info=True
                    )
                return
            if not should_flush:
                continue
            try:
                self.flush()
            except Exception:
                logger.error(
                    "runtracer error: Failed to process trace entry.\n"
                    "This does not affect your application's runtime.\n"
                    "Error details:",
                    exc_info=True,
                )

    def _timer_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.flush_interval):
            try:
                self.flush()
            except Exception:
                logger.error("Scheduled flush failed.", exc_info=True)

    def _append_locked(self, item: SerializedRunOperation) -> None:
        if item.operation == "post":
            self._pending_creates.append(item)
        else:
            self._pending_updates.append(item)

    def _drain_queue_locked(self) -> None:
        if not self._queued_entries:
            return
        # Sentinels stay queued, in order, for the worker.
        sentinels: deque[QueueItem] = deque()
        while self._queue:
            item = self._queue.popleft()
            if isinstance(item, SerializedRunOperation):
                self._append_locked(item)
            else:
                sentinels.append(item)
        self._queue.extend(sentinels)
        self._queued_entries = 0

    def _requeue(
        self,
        creates: list[SerializedRunOperation],
        updates: list[SerializedRunOperation],
    ) -> None:
        with self._buffer_lock:
            self._pending_creates[:0] = creates
            self._pending_updates[:0] = updates
            self._trim_locked()

    def _buffered_count_locked(self) -> int:
        return (
            len(self._pending_creates)
            + len(self._pending_updates)
            + self._queued_entries
        )

    def _trim_locked(self) -> None:
        if self.max_pending_entries is None:
            return
        while self._buffered_count_locked() > self.max_pending_entries:
            dropped = self._pop_oldest_locked()
            if dropped is None:
                return
            logger.warning(
                f"Tracing buffer is full ({self.max_pending_entries} entries);"
                f" dropped {dropped.operation} for run {dropped.id}."
            )

    def _pop_oldest_locked(self) -> Optional[SerializedRunOperation]:
        # Pending entries were enqueued before anything still in the queue.
        heads = [buf for buf in (self._pending_creates, self._pending_updates) if buf]
        if heads:
            return min(heads, key=lambda buf: buf[0].seq).pop(0)
        for index, item in enumerate(self._queue):
            if isinstance(item, SerializedRunOperation):
                del self._queue[index]
                self._queued_entries -= 1
                return item
        return None

    def _log_send_failure(
        self,
        error: Exception,
        tenant_id: Optional[str],
        creates: list[SerializedRunOperation],
        updates: list[SerializedRunOperation],
    ) -> None:
        summary = (
            f"runtracer error: Failed to submit {len(creates)} create(s) and"
            f" {len(updates)} update(s) for tenant {tenant_id or 'default'}."
            " They will be retried on the next flush.\n"
            "This does not affect your application's runtime.\n"
        )
        if isinstance(error, rt_utils.TransportError) and error.is_retryable:
            logger.warning(summary + f"Error details: {error}")
        else:
            logger.error(summary + "Error details:", exc_info=error)
