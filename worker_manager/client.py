from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any
from urllib.parse import quote

import httpx

from worker_manager.core.config import WorkerManagerConfig
from worker_manager.core.errors import WorkerManagerError
from worker_manager.types import WorkerManagerHealth, WorkerRecord


class WorkerManagerClientError(WorkerManagerError):
    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def _loopback_host(host: str) -> str:
    if host in {"0.0.0.0", "::", ""}:
        return "127.0.0.1"
    return host


def default_base_url(config: WorkerManagerConfig) -> str:
    return f"http://{_loopback_host(config.host)}:{config.port}"


class WorkerManagerClient:
    """Async client for the worker manager HTTP API."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, http_client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "WorkerManagerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(self, method: str, path: str, body: dict | None = None) -> dict:
        try:
            response = await self._http.request(method, f"{self.base_url}{path}", json=body)
        except httpx.HTTPError as exc:
            raise WorkerManagerClientError(f"{method} {path} failed: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error:
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                raise WorkerManagerClientError(
                    str(error.get("message") or response.reason_phrase),
                    status_code=response.status_code,
                    code=error.get("code"),
                )
            detail = payload.get("detail") if isinstance(payload, dict) else None
            raise WorkerManagerClientError(
                str(detail or response.reason_phrase), status_code=response.status_code
            )
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _worker(payload: dict) -> WorkerRecord | None:
        raw = payload.get("worker")
        return WorkerRecord.model_validate(raw) if raw is not None else None

    @staticmethod
    def _workers(payload: dict) -> list[WorkerRecord]:
        return [WorkerRecord.model_validate(item) for item in payload.get("workers", [])]

    async def health(self) -> WorkerManagerHealth:
        return WorkerManagerHealth.model_validate(await self._request("GET", "/health"))

    async def list_workers(self) -> list[WorkerRecord]:
        return self._workers(await self._request("GET", "/workers"))

    async def get_worker(self, worker_id: str) -> WorkerRecord | None:
        try:
            payload = await self._request("GET", f"/workers/{quote(worker_id, safe='')}")
        except WorkerManagerClientError as exc:
            if exc.status_code == 404:
                return None
            raise
        return self._worker(payload)

    async def start_worker(self, worker_id: str | None = None, port: int | None = None) -> WorkerRecord:
        body: dict[str, Any] = {}
        if port is not None:
            body["port"] = port
        if worker_id:
            path = f"/workers/{quote(worker_id, safe='')}/start"
        else:
            path = "/workers/start"
        worker = self._worker(await self._request("POST", path, body))
        if worker is None:
            raise WorkerManagerClientError(f"POST {path} returned no worker")
        return worker

    async def stop_worker(self, worker_id: str, signal: str | None = None) -> WorkerRecord | None:
        body = {"signal": signal} if signal else {}
        return self._worker(await self._request("POST", f"/workers/{quote(worker_id, safe='')}/stop", body))

    async def reconcile_workers(self, desired_count: int) -> list[WorkerRecord]:
        return self._workers(await self._request("POST", "/workers/reconcile", {"desiredCount": desired_count}))


def format_worker_row(worker: WorkerRecord) -> str:
    pid = worker.pid if worker.pid is not None else "n/a"
    return (
        f"{worker.id} status={worker.status} pid={pid} port={worker.port} "
        f"restarts={worker.restart_count}"
    )


async def _ps(base_url: str) -> int:
    async with WorkerManagerClient(base_url) as client:
        try:
            snapshot = await client.health()
            records = await client.list_workers()
        except WorkerManagerClientError as exc:
            print(f"[worker-manager-ps] unreachable: {exc}", file=sys.stderr)
            return 1
    print(
        f"[worker-manager-ps] {snapshot.manager_id} pid={snapshot.pid} "
        f"running={snapshot.workers.running}/{snapshot.workers.total}"
    )
    for worker in records:
        print(f"[worker-manager-ps] {format_worker_row(worker)}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="List workers managed by a running worker manager")
    parser.add_argument("--url", type=str, default=None)
    args = parser.parse_args()
    base_url = args.url or default_base_url(WorkerManagerConfig.load())
    raise SystemExit(asyncio.run(_ps(base_url)))


if __name__ == "__main__":
    main()
