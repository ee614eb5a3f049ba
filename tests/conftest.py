from __future__ import annotations

import asyncio
import contextlib
import sys
import time
from typing import AsyncIterator, Callable

import pytest
from fastapi.testclient import TestClient

from worker_manager.core.config import WorkerManagerConfig
from worker_manager.core.supervisor import WorkerSupervisor
from worker_manager.main import create_app

SLEEPER_COMMAND = [sys.executable, "-c", "import time; time.sleep(60)"]
CRASHER_COMMAND = [sys.executable, "-c", "import sys; sys.exit(3)"]


def make_config(tmp_path, **overrides) -> WorkerManagerConfig:
    values = {
        "manager_id": "test-manager",
        "db_path": str(tmp_path / "workers.sqlite3"),
        "port_range_start": 9001,
        "port_range_end": 9010,
        "coordinator_url": "http://127.0.0.1:3003",
        "desired_count": 0,
        "worker_command": list(SLEEPER_COMMAND),
        "workspace_root": str(tmp_path),
        "restart_base_delay_ms": 50,
        "restart_max_delay_ms": 200,
        "min_uptime_ms": 300,
        "stop_grace_period_ms": 1000,
    }
    values.update(overrides)
    return WorkerManagerConfig(**values)


@contextlib.asynccontextmanager
async def running_supervisor(config: WorkerManagerConfig) -> AsyncIterator[WorkerSupervisor]:
    supervisor = WorkerSupervisor(config)
    await supervisor.open()
    try:
        yield supervisor
    finally:
        await supervisor.close()


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def config(tmp_path) -> WorkerManagerConfig:
    return make_config(tmp_path)


@pytest.fixture
def client(config):
    app = create_app(config, reconcile_on_startup=False)
    with TestClient(app) as test_client:
        yield test_client
