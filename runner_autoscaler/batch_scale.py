"""Batching scale requests so each autoscaler is updated once per interval."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from .hra import CapacityReservation, HorizontalRunnerAutoscaler, ScaleUpTrigger
from .scheme import NamespacedName, ObjectStore
from .targets import ScaleTarget, get_valid_capacity_reservations

DEFAULT_INTERVAL = 3.0
DEFAULT_BACKOFF = (1.0, 2.0, 4.0, 8.0, 16.0)

logger = logging.getLogger(__name__)

_WAKE = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ScaleOperation:
    """One requested change of an autoscaler's reserved capacity."""

    trigger: ScaleUpTrigger
    log: Any = None


@dataclass
class BatchScaleOperation:
    """All operations requested for one autoscaler within an interval."""

    namespaced_name: NamespacedName
    scale_ops: list[ScaleOperation] = field(default_factory=list)


class BatchScaler:
    """Queues scale targets and applies them to autoscalers in batches.

    Targets queued during one interval are grouped by autoscaler, so that each
    autoscaler is updated only once however many events arrived for it.
    Failed batches are retried with exponential backoff.
    """

    def __init__(
        self,
        store: ObjectStore,
        interval: float = DEFAULT_INTERVAL,
        clock: Callable[[], datetime] | None = None,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        autostart: bool = True,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if not backoff:
            raise ValueError("backoff must have at least one delay")
        self.store = store
        self.interval = interval
        self.clock = clock or _utcnow
        self.backoff = tuple(backoff)
        self.autostart = autostart
        self.log = log or logger
        self._queue: queue.Queue[Any] = queue.Queue()
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add(self, target: ScaleTarget | None) -> None:
        """Queue a target; the worker is started on first use unless autostart is off."""
        if target is None:
            return
        if self.autostart:
            self.start()
        self._queue.put(target)

    def collect(self, timeout: float | None = None) -> dict[NamespacedName, BatchScaleOperation]:
        """Dequeue targets for ``timeout`` seconds and group them by autoscaler."""
        deadline = time.monotonic() + (self.interval if timeout is None else timeout)
        batches: dict[NamespacedName, BatchScaleOperation] = {}
        ops = 0
        while not self._stopped.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                item = self._queue.get(timeout=remaining)
            except queue.Empty:
                break
            if item is _WAKE:
                continue
            key = NamespacedName(item.namespace, item.name)
            batch = batches.setdefault(key, BatchScaleOperation(namespaced_name=key))
            batch.scale_ops.append(ScaleOperation(trigger=item.trigger, log=item.log or self.log))
            ops += 1
        self.log.debug("Batch worker dequeued operations: ops=%d batches=%d", ops, len(batches))
        return batches

    def batch_scale(self, batch: BatchScaleOperation) -> HorizontalRunnerAutoscaler:
        """Apply a batch to its autoscaler, dropping expired reservations; return the update."""
        kind = HorizontalRunnerAutoscaler.KIND
        name = batch.namespaced_name
        hra = self.store.get(kind, name.namespace, name.name)
        updated = hra.deep_copy()
        updated.spec.capacity_reservations = get_valid_capacity_reservations(updated, self.clock())

        added = completed = 0
        for op in batch.scale_ops:
            amount = op.trigger.amount or 1
            (op.log or self.log).debug("Adding capacity reservation: amount=%d", amount)

            if amount > 0:
                now = self.clock()
                updated.spec.capacity_reservations.append(
                    CapacityReservation(
                        effective_time=now,
                        expiration_time=now + op.trigger.duration,
                        replicas=amount,
                    )
                )
                added += amount
            else:
                reservations = updated.spec.capacity_reservations
                match = next(
                    (i for i, r in enumerate(reservations) if r.replicas + amount == 0), None
                )
                if match is not None:
                    del reservations[match]
                completed += amount

        before = len(hra.spec.capacity_reservations)
        after = len(updated.spec.capacity_reservations)
        self.log.debug(
            "Updating hra %s for capacityReservations update: before=%d expired=%d added=%d "
            "completed=%d after=%d",
            hra.name,
            before,
            before - after,
            added,
            completed,
            after,
        )
        self.store.update(kind, updated)
        return updated

    def run_once(self) -> dict[NamespacedName, BatchScaleOperation]:
        """Collect one interval of targets and apply them, retrying failures until they succeed."""
        collected = self.collect()
        pending = dict(collected)
        attempt = 0
        while pending:
            failed = {}
            for key, batch in pending.items():
                try:
                    self.batch_scale(batch)
                except Exception as exc:  # every failure is retried with backoff
                    self.log.debug("Failed to scale %s due to error: %s", key, exc)
                    failed[key] = batch
                else:
                    self.log.debug("Successfully ran batch scale: hra=%s", key)
            if not failed:
                break
            pending = failed
            delay = self.backoff[attempt] if attempt < len(self.backoff) else self.backoff[-1]
            attempt += 1
            if self._stopped.wait(delay):
                break
        return collected

    def start(self) -> None:
        """Start the background worker if it is not already running."""
        with self._lock:
            if self.running:
                return
            self._stopped.clear()
            self._thread = threading.Thread(target=self._run, name="batch-scaler", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Stop the background worker and wait for it to finish."""
        self._stopped.set()
        self._queue.put(_WAKE)
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join()

    def _run(self) -> None:
        self.log.info("Starting batch worker")
        try:
            while not self._stopped.is_set():
                self.run_once()
        finally:
            self.log.info("Stopped batch worker")