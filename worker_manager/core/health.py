from __future__ import annotations

from typing import Iterable

from worker_manager.types import WorkerCounts, WorkerManagerHealth, WorkerRecord


def build_health(records: Iterable[WorkerRecord], manager_id: str, pid: int) -> WorkerManagerHealth:
    workers = list(records)
    running = sum(1 for worker in workers if worker.status == "running")
    return WorkerManagerHealth(
        manager_id=manager_id,
        pid=pid,
        workers=WorkerCounts(running=running, total=len(workers)),
    )
