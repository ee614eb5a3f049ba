from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

WorkerStatusLiteral = Literal["stopped", "starting", "running", "stopping", "error"]

ACTIVE_STATUSES = frozenset({"starting", "running", "stopping"})


def now_iso() -> str:
    stamp = datetime.now(timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkerRecord(_CamelModel):
    id: str = Field(min_length=1)
    name: str
    kind: str = "worker"
    status: WorkerStatusLiteral
    pid: int | None = None
    managed_by: str
    started_at: str | None = None
    updated_at: str
    port: int = Field(ge=1, le=65535)
    restart_count: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_pid(self) -> "WorkerRecord":
        if self.pid is not None and self.status not in ACTIVE_STATUSES:
            raise ValueError(f"pid is only allowed while starting/running/stopping (status={self.status})")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkerStartRequest(_CamelModel):
    worker_id: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)


class WorkerStopRequest(_CamelModel):
    signal: str | None = None


class WorkerReconcileRequest(_CamelModel):
    desired_count: int = Field(ge=0)


class WorkerCounts(BaseModel):
    running: int
    total: int


class WorkerManagerHealth(_CamelModel):
    status: Literal["ok"] = "ok"
    service: str = "worker-manager"
    manager_id: str
    pid: int
    workers: WorkerCounts

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
