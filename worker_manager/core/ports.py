from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping

from worker_manager.core.errors import PortRangeExhausted
from worker_manager.types import WorkerRecord

_ORDINAL_ID = re.compile(r"^worker-(\d+)$")


def worker_ordinal(worker_id: str) -> int | None:
    """Return N for ids of the form ``worker-N`` (N >= 1), otherwise None."""
    match = _ORDINAL_ID.match(worker_id)
    if not match:
        return None
    ordinal = int(match.group(1))
    return ordinal if ordinal >= 1 else None


@dataclass(frozen=True)
class PortAllocator:
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 1 or self.end > 65535 or self.start > self.end:
            raise ValueError(f"Invalid worker port range {self.start}-{self.end}")

    @property
    def capacity(self) -> int:
        return self.end - self.start + 1

    def in_range(self, port: int | None) -> bool:
        return port is not None and self.start <= port <= self.end

    def ordinal_port(self, worker_id: str) -> int | None:
        ordinal = worker_ordinal(worker_id)
        if ordinal is None:
            return None
        candidate = self.start + ordinal - 1
        return candidate if candidate <= self.end else self.start

    def reserve(
        self,
        worker_id: str,
        records: Mapping[str, WorkerRecord],
        preferred_port: int | None = None,
    ) -> int:
        others = [record for record_id, record in records.items() if record_id != worker_id]
        held_by_any = {record.port for record in others}
        held_by_active = {record.port for record in others if record.is_active}

        existing = records.get(worker_id)
        if existing is not None and self.in_range(existing.port) and existing.port not in held_by_active:
            return existing.port
        if self.in_range(preferred_port) and preferred_port not in held_by_active:
            return preferred_port
        ordinal_port = self.ordinal_port(worker_id)
        if ordinal_port is not None and ordinal_port not in held_by_any:
            return ordinal_port
        for port in range(self.start, self.end + 1):
            if port not in held_by_any:
                return port
        raise PortRangeExhausted(self.start, self.end)

    def plan(
        self,
        worker_ids: Iterable[str],
        records: Mapping[str, WorkerRecord],
        releasing: Iterable[str] = (),
    ) -> dict[str, int]:
        """Assign ports to a batch of workers about to start, all or nothing.

        Ports are judged against the state after the ``releasing`` workers
        have stopped: only records that stay active keep their ports off
        limits. A stopped record outside the batch does not block its port for
        an ordinal ``worker-N`` assignment, but the ascending scan uses its
        port only when no untouched port is left.
        """
        batch = list(dict.fromkeys(worker_ids))
        batch_set = set(batch)
        released = set(releasing)
        remaining = {
            record_id: record
            for record_id, record in records.items()
            if record_id not in batch_set and record_id not in released
        }
        held_by_active = {record.port for record in remaining.values() if record.is_active}
        held_by_any = {record.port for record in records.values()}

        assigned: dict[str, int] = {}
        for worker_id in batch:
            existing = records.get(worker_id)
            if (
                existing is not None
                and self.in_range(existing.port)
                and existing.port not in held_by_active
                and existing.port not in assigned.values()
            ):
                assigned[worker_id] = existing.port
        for worker_id in batch:
            if worker_id in assigned:
                continue
            taken = held_by_active | set(assigned.values())
            ordinal_port = self.ordinal_port(worker_id)
            if ordinal_port is not None and ordinal_port not in taken:
                assigned[worker_id] = ordinal_port
                continue
            candidates = [port for port in range(self.start, self.end + 1) if port not in taken]
            untouched = [port for port in candidates if port not in held_by_any]
            if not candidates:
                raise PortRangeExhausted(self.start, self.end)
            assigned[worker_id] = (untouched or candidates)[0]
        return assigned
