import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from runner_autoscaler.batch_scale import BatchScaleOperation, BatchScaler, ScaleOperation
from runner_autoscaler.hra import (
    CapacityReservation,
    HorizontalRunnerAutoscaler,
    HorizontalRunnerAutoscalerSpec,
    ScaleUpTrigger,
)
from runner_autoscaler.scheme import NamespacedName, NotFoundError, ObjectMeta, ObjectStore
from runner_autoscaler.targets import ScaleTarget

NOW = datetime(2022, 3, 1, 10, 0, tzinfo=timezone.utc)
KIND = HorizontalRunnerAutoscaler.KIND


def make_hra(name="hra", namespace="ns", reservations=()):
    return HorizontalRunnerAutoscaler(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=HorizontalRunnerAutoscalerSpec(capacity_reservations=list(reservations)),
    )


def target(hra, amount=0, duration=timedelta(minutes=5)):
    return ScaleTarget(hra=hra, trigger=ScaleUpTrigger(amount=amount, duration=duration))


def scaler(store, **kwargs):
    kwargs.setdefault("clock", lambda: NOW)
    kwargs.setdefault("autostart", False)
    return BatchScaler(store, **kwargs)


def stored(store, name="hra", namespace="ns"):
    return store.get(KIND, namespace, name)


def test_add_none_is_ignored():
    s = scaler(ObjectStore())
    s.add(None)
    assert s.collect(0.01) == {}
    assert not s.running


def test_collect_groups_by_autoscaler():
    a, b = make_hra("a"), make_hra("b")
    s = scaler(ObjectStore())
    s.add(target(a))
    s.add(target(b, amount=2))
    s.add(target(a, amount=-1))
    batches = s.collect(0.05)
    assert set(batches) == {NamespacedName("ns", "a"), NamespacedName("ns", "b")}
    assert [op.trigger.amount for op in batches[NamespacedName("ns", "a")].scale_ops] == [0, -1]
    assert len(batches[NamespacedName("ns", "b")].scale_ops) == 1


def test_batch_scale_adds_reservation_with_default_amount():
    hra = make_hra()
    store = ObjectStore()
    store.add(KIND, hra)
    s = scaler(store)
    batch = BatchScaleOperation(
        NamespacedName("ns", "hra"),
        [ScaleOperation(trigger=ScaleUpTrigger(duration=timedelta(minutes=5)))],
    )
    updated = s.batch_scale(batch)
    reservations = stored(store).spec.capacity_reservations
    assert reservations == updated.spec.capacity_reservations
    assert len(reservations) == 1
    assert reservations[0].replicas == 1
    assert reservations[0].effective_time == NOW
    assert reservations[0].expiration_time == NOW + timedelta(minutes=5)


def test_batch_scale_negative_amount_removes_first_matching_reservation():
    keep = CapacityReservation(expiration_time=NOW + timedelta(minutes=1), replicas=2)
    first = CapacityReservation(name="first", expiration_time=NOW + timedelta(minutes=2), replicas=1)
    second = CapacityReservation(name="second", expiration_time=NOW + timedelta(minutes=3), replicas=1)
    store = ObjectStore()
    store.add(KIND, make_hra(reservations=[keep, first, second]))
    s = scaler(store)
    batch = BatchScaleOperation(
        NamespacedName("ns", "hra"), [ScaleOperation(trigger=ScaleUpTrigger(amount=-1))]
    )
    s.batch_scale(batch)
    assert stored(store).spec.capacity_reservations == [keep, second]


def test_batch_scale_drops_expired_reservations():
    expired = CapacityReservation(expiration_time=NOW - timedelta(seconds=1), replicas=1)
    valid = CapacityReservation(expiration_time=NOW + timedelta(seconds=1), replicas=3)
    store = ObjectStore()
    store.add(KIND, make_hra(reservations=[expired, valid]))
    s = scaler(store)
    s.batch_scale(
        BatchScaleOperation(
            NamespacedName("ns", "hra"),
            [ScaleOperation(trigger=ScaleUpTrigger(amount=2, duration=timedelta(minutes=1)))],
        )
    )
    reservations = stored(store).spec.capacity_reservations
    assert reservations[0] == valid
    assert [r.replicas for r in reservations] == [3, 2]


def test_batch_scale_missing_hra():
    s = scaler(ObjectStore())
    with pytest.raises(NotFoundError):
        s.batch_scale(BatchScaleOperation(NamespacedName("ns", "absent"), []))


def test_run_once_applies_each_batch():
    store = ObjectStore()
    hra = make_hra()
    store.add(KIND, hra)
    s = scaler(store, interval=0.05)
    s.add(target(hra, amount=1))
    s.add(target(hra, amount=1))
    collected = s.run_once()
    assert list(collected) == [NamespacedName("ns", "hra")]
    assert len(stored(store).spec.capacity_reservations) == 2


def test_run_once_retries_until_hra_exists():
    store = ObjectStore()
    hra = make_hra()
    s = scaler(store, interval=0.02, backoff=(0.01,))
    s.add(target(hra))
    results = []
    worker = threading.Thread(target=lambda: results.append(s.run_once()))
    worker.start()
    time.sleep(0.1)
    store.add(KIND, hra)
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert len(results) == 1
    assert len(stored(store).spec.capacity_reservations) == 1


def test_background_worker_start_and_stop():
    store = ObjectStore()
    hra = make_hra()
    store.add(KIND, hra)
    s = BatchScaler(store, interval=0.05, clock=lambda: NOW)
    s.add(target(hra, amount=3))
    assert s.running
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and not stored(store).spec.capacity_reservations:
        time.sleep(0.01)
    s.stop()
    assert not s.running
    assert [r.replicas for r in stored(store).spec.capacity_reservations] == [3]


def test_empty_backoff_rejected():
    with pytest.raises(ValueError):
        BatchScaler(ObjectStore(), backoff=())