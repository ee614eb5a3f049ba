from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from worker_manager.core.errors import CapacityExceeded, InvalidDesiredCount
from worker_manager.types import WorkerRecord


def desired_worker_ids(count: int) -> list[str]:
    return [f"worker-{index + 1}" for index in range(count)]


def validate_desired_count(value: Any, capacity: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidDesiredCount(f"desiredCount must be an integer, got {value!r}")
    if value < 0:
        raise InvalidDesiredCount(f"desiredCount must be non-negative, got {value}")
    if value > capacity:
        raise CapacityExceeded(value, capacity)
    return value


@dataclass
class ReconcilePlan:
    to_stop: list[str] = field(default_factory=list)
    to_start: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.to_stop and not self.to_start


def plan_reconcile(
    desired_ids: Iterable[str],
    records: Mapping[str, WorkerRecord],
    live_ids: Iterable[str],
    pending_restart_ids: Iterable[str] = (),
    known_ids: Iterable[str] = (),
) -> ReconcilePlan:
    """Work out which workers to stop and start to reach the desired set.

    ``live_ids`` are workers with a live process handle, ``pending_restart_ids``
    workers waiting on a backoff timer. Anything known but undesired that is
    not already quiescent gets stopped; desired workers without a live process
    get started.
    """
    desired = list(dict.fromkeys(desired_ids))
    desired_set = set(desired)
    live = set(live_ids)
    pending = set(pending_restart_ids)
    known = sorted(set(records) | set(known_ids) | live | pending)

    plan = ReconcilePlan()
    for worker_id in known:
        if worker_id in desired_set:
            continue
        record = records.get(worker_id)
        quiescent = (
            worker_id not in live
            and worker_id not in pending
            and (record is None or record.status == "stopped")
        )
        if not quiescent:
            plan.to_stop.append(worker_id)
    plan.to_start = [worker_id for worker_id in desired if worker_id not in live]
    return plan
