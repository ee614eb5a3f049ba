from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from worker_manager.api.errors import format_error
from worker_manager.core.supervisor import WorkerSupervisor, parse_stop_signal
from worker_manager.types import (
    WorkerReconcileRequest,
    WorkerRecord,
    WorkerStartRequest,
    WorkerStopRequest,
)

router = APIRouter(prefix="/workers")


def _supervisor(request: Request) -> WorkerSupervisor:
    return request.app.state.supervisor


def _worker_payload(record: WorkerRecord | None) -> dict:
    return {"worker": record.to_payload() if record is not None else None}


def _workers_payload(records: list[WorkerRecord]) -> dict:
    return {"workers": [record.to_payload() for record in records]}


@router.get("")
async def list_workers(request: Request) -> dict:
    return _workers_payload(await _supervisor(request).list_workers())


@router.post("/reconcile")
async def reconcile_workers(request: Request, payload: WorkerReconcileRequest) -> dict:
    workers = await _supervisor(request).reconcile_workers(payload.desired_count)
    return _workers_payload(workers)


@router.post("/start")
async def start_worker(request: Request, payload: WorkerStartRequest | None = None) -> dict:
    worker = await _supervisor(request).start_worker(payload or WorkerStartRequest())
    return _worker_payload(worker)


@router.get("/{worker_id}")
async def get_worker(request: Request, worker_id: str) -> JSONResponse:
    worker = await _supervisor(request).get_worker(worker_id)
    if worker is None:
        return format_error(f"Worker {worker_id} not found", err_type="not_found")
    return JSONResponse(_worker_payload(worker))


@router.post("/{worker_id}/start")
async def start_named_worker(request: Request, worker_id: str, payload: WorkerStartRequest | None = None) -> dict:
    port = payload.port if payload is not None else None
    worker = await _supervisor(request).start_worker(WorkerStartRequest(worker_id=worker_id, port=port))
    return _worker_payload(worker)


@router.post("/{worker_id}/stop")
async def stop_worker(request: Request, worker_id: str, payload: WorkerStopRequest | None = None) -> dict:
    sig = parse_stop_signal(payload.signal if payload is not None else None)
    worker = await _supervisor(request).stop_worker(worker_id, sig)
    return _worker_payload(worker)
