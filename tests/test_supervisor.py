from __future__ import annotations

import asyncio
import os
import signal
import sys
import time

import pytest

from conftest import CRASHER_COMMAND, make_config, running_supervisor, wait_for
from worker_manager.core.errors import (
    CapacityExceeded,
    InvalidSignal,
    InvalidWorkerId,
    PortRangeExhausted,
    SupervisorShuttingDown,
)
from worker_manager.core.ports import PortAllocator
from worker_manager.core.store import WorkerRecordStore
from worker_manager.core.supervisor import WorkerSupervisor, describe_exit, launch_process, parse_stop_signal
from worker_manager.types import WorkerRecord, WorkerStartRequest, now_iso


def _statuses(supervisor: WorkerSupervisor) -> dict[str, str]:
    return {worker_id: record.status for worker_id, record in supervisor.records.items()}


def _all_running(supervisor: WorkerSupervisor, *worker_ids: str):
    return lambda: all(
        worker_id in supervisor.records and supervisor.records[worker_id].status == "running"
        for worker_id in worker_ids
    )


def test_parse_stop_signal():
    assert parse_stop_signal(None) is None
    assert parse_stop_signal("  ") is None
    assert parse_stop_signal("SIGTERM") is signal.SIGTERM
    assert parse_stop_signal("kill") is signal.SIGKILL
    assert parse_stop_signal(str(int(signal.SIGINT))) is signal.SIGINT
    with pytest.raises(InvalidSignal):
        parse_stop_signal("SIGNOPE")


def test_describe_exit():
    assert describe_exit(0) == {"exitCode": 0}
    assert describe_exit(-int(signal.SIGKILL)) == {"signal": "SIGKILL"}
    assert describe_exit(None) == {}


@pytest.mark.asyncio
async def test_reconcile_scales_up_then_down(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        await supervisor.reconcile_workers(5)
        ids = [f"worker-{index}" for index in range(1, 6)]
        await wait_for(_all_running(supervisor, *ids))
        ports = [supervisor.records[worker_id].port for worker_id in ids]
        assert ports == [9001, 9002, 9003, 9004, 9005]

        workers = await supervisor.reconcile_workers(2)
        statuses = {worker.id: worker.status for worker in workers}
        assert statuses["worker-1"] == "running"
        assert statuses["worker-2"] == "running"
        for worker_id in ("worker-3", "worker-4", "worker-5"):
            assert statuses[worker_id] == "stopped"
            assert supervisor.records[worker_id].pid is None
            assert supervisor.controls[worker_id].process is None
        assert supervisor.pending_restarts == []

        health = await supervisor.health()
        assert health.workers.running == 2
        assert health.workers.total == 5


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        await supervisor.reconcile_workers(2)
        await wait_for(_all_running(supervisor, "worker-1", "worker-2"))
        pids = {worker_id: supervisor.records[worker_id].pid for worker_id in ("worker-1", "worker-2")}

        await supervisor.reconcile_workers(2)
        assert {worker_id: supervisor.records[worker_id].pid for worker_id in pids} == pids
        assert all(supervisor.records[worker_id].restart_count == 0 for worker_id in pids)


@pytest.mark.asyncio
async def test_capacity_guard_leaves_state_untouched(tmp_path):
    config = make_config(tmp_path, port_range_start=9001, port_range_end=9003)
    async with running_supervisor(config) as supervisor:
        await supervisor.reconcile_workers(1)
        before = dict(supervisor.records)
        with pytest.raises(CapacityExceeded):
            await supervisor.reconcile_workers(4)
        assert supervisor.records == before


@pytest.mark.asyncio
async def test_start_assigns_next_ordinal_id(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        first = await supervisor.start_worker()
        second = await supervisor.start_worker(WorkerStartRequest())
        assert (first.id, first.port) == ("worker-1", 9001)
        assert (second.id, second.port) == ("worker-2", 9002)
        assert first.managed_by == "test-manager"
        assert first.metadata["coordinatorUrl"] == "http://127.0.0.1:3003"

        with pytest.raises(InvalidWorkerId):
            await supervisor.start_worker(WorkerStartRequest(worker_id="bad id!"))


@pytest.mark.asyncio
async def test_active_ports_stay_unique(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        builder = await supervisor.start_worker(WorkerStartRequest(worker_id="builder", port=9001))
        assert builder.port == 9002
        active_ports = [record.port for record in supervisor.records.values() if record.is_active]
        assert len(active_ports) == len(set(active_ports))


@pytest.mark.asyncio
async def test_explicit_stop_does_not_restart(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        await wait_for(_all_running(supervisor, "worker-1"))

        stopped = await supervisor.stop_worker("worker-1", signal.SIGKILL)
        assert stopped is not None
        assert stopped.status == "stopped"
        assert stopped.pid is None
        assert stopped.metadata["signal"] == "SIGKILL"
        assert stopped.metadata["stoppedBy"] == "test-manager"

        await asyncio.sleep(0.3)
        assert supervisor.records["worker-1"].status == "stopped"
        assert supervisor.pending_restarts == []
        assert supervisor.controls["worker-1"].process is None

        persisted = await supervisor.store.get("worker-1")
        assert persisted is not None and persisted.status == "stopped"


@pytest.mark.asyncio
async def test_stop_unknown_worker_returns_none(tmp_path):
    async with running_supervisor(make_config(tmp_path)) as supervisor:
        assert await supervisor.stop_worker("worker-9") is None
        assert await supervisor.get_worker("worker-9") is None


@pytest.mark.asyncio
async def test_crash_loop_backs_off_to_max(tmp_path):
    config = make_config(tmp_path, worker_command=list(CRASHER_COMMAND))
    async with running_supervisor(config) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        control = supervisor.controls["worker-1"]

        await wait_for(lambda: supervisor.records["worker-1"].restart_count >= 3, timeout=10.0)
        assert control.restart_delay_ms == 200

        stopped = await supervisor.stop_worker("worker-1")
        assert stopped.status == "stopped"
        assert supervisor.pending_restarts == []
        restarts = supervisor.records["worker-1"].restart_count
        await asyncio.sleep(0.4)
        assert supervisor.records["worker-1"].restart_count == restarts
        assert supervisor.records["worker-1"].status == "stopped"


@pytest.mark.asyncio
async def test_long_uptime_resets_backoff(tmp_path):
    command = [sys.executable, "-c", "import sys, time; time.sleep(0.6); sys.exit(1)"]
    config = make_config(tmp_path, worker_command=command)
    async with running_supervisor(config) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        control = supervisor.controls["worker-1"]
        control.restart_delay_ms = 200

        await wait_for(lambda: supervisor.records["worker-1"].restart_count >= 1, timeout=10.0)
        assert control.restart_delay_ms == 50


@pytest.mark.asyncio
async def test_spawn_failure_records_error_without_retry(tmp_path):
    config = make_config(tmp_path, worker_command=[str(tmp_path / "missing-worker-binary")])
    async with running_supervisor(config) as supervisor:
        record = await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        assert record.status == "error"
        assert record.pid is None
        assert "error" in record.metadata
        assert record.started_at is None
        await asyncio.sleep(0.2)
        assert supervisor.pending_restarts == []
        assert supervisor.records["worker-1"].restart_count == 0


@pytest.mark.asyncio
async def test_open_recovers_records_as_stopped(tmp_path):
    config = make_config(tmp_path)
    store = WorkerRecordStore(config.db_path)
    await store.open()
    await store.put(
        WorkerRecord(
            id="worker-1",
            name="worker-1",
            status="running",
            pid=999999,
            managed_by="old-manager",
            updated_at=now_iso(),
            port=9001,
            restart_count=2,
        )
    )
    await store.close()

    async with running_supervisor(config) as supervisor:
        record = await supervisor.get_worker("worker-1")
        assert record is not None
        assert record.status == "stopped"
        assert record.pid is None
        assert record.restart_count == 2
        assert record.managed_by == "test-manager"
        assert "recoveredAt" in record.metadata
        assert supervisor.controls["worker-1"].process is None

        restarted = await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        assert restarted.port == 9001


@pytest.mark.asyncio
async def test_killed_worker_is_restarted_on_same_port(tmp_path):
    config = make_config(tmp_path, port_range_start=9001, port_range_end=9003)
    async with running_supervisor(config) as supervisor:
        await supervisor.reconcile_workers(3)
        await wait_for(_all_running(supervisor, "worker-1", "worker-2", "worker-3"))
        old_pid = supervisor.records["worker-2"].pid
        assert old_pid is not None

        os.kill(old_pid, signal.SIGKILL)
        await wait_for(
            lambda: supervisor.records["worker-2"].restart_count == 1
            and supervisor.records["worker-2"].status == "running",
            timeout=10.0,
        )
        restarted = supervisor.records["worker-2"]
        assert restarted.pid != old_pid
        assert restarted.port == 9002
        ports = {record.port for record in supervisor.records.values()}
        assert ports == {9001, 9002, 9003}
        pids = [record.pid for record in supervisor.records.values()]
        assert len(set(pids)) == 3


@pytest.mark.asyncio
async def test_close_stops_workers_and_refuses_new_work(tmp_path):
    config = make_config(tmp_path)
    supervisor = WorkerSupervisor(config)
    await supervisor.open()
    await supervisor.reconcile_workers(2)
    await wait_for(_all_running(supervisor, "worker-1", "worker-2"))

    await supervisor.close()
    assert set(_statuses(supervisor).values()) == {"stopped"}
    assert all(control.process is None for control in supervisor.controls.values())
    with pytest.raises(SupervisorShuttingDown):
        await supervisor.start_worker()
    with pytest.raises(SupervisorShuttingDown):
        await supervisor.reconcile_workers(1)

    store = WorkerRecordStore(config.db_path)
    await store.open()
    try:
        assert {record.status for record in await store.list()} == {"stopped"}
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_worker_environment_is_passed_to_launcher(tmp_path):
    launches: list[tuple[list[str], str, dict]] = []

    async def recording_launcher(command, cwd, env):
        launches.append((list(command), cwd, dict(env)))
        return await launch_process(command, cwd, env)

    config = make_config(tmp_path, coordinator_url="http://coord.test:3003", worker_env={"EXTRA_FLAG": "1"})
    supervisor = WorkerSupervisor(config, launcher=recording_launcher)
    await supervisor.open()
    try:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-2"))
    finally:
        await supervisor.close()

    command, cwd, env = launches[0]
    assert command == config.launch_command
    assert cwd == str(tmp_path)
    assert env["WORKER_ID"] == "worker-2"
    assert env["WORKER_SERVER_PORT"] == "9002"
    assert env["WORKER_COORDINATOR_URL"] == "http://coord.test:3003"
    assert env["EXTRA_FLAG"] == "1"


@pytest.mark.asyncio
async def test_reconcile_reclaims_ports_of_undesired_workers(tmp_path):
    config = make_config(tmp_path, port_range_start=9001, port_range_end=9003)
    async with running_supervisor(config) as supervisor:
        builder = await supervisor.start_worker(WorkerStartRequest(worker_id="builder"))
        assert builder.port == 9001
        await wait_for(_all_running(supervisor, "builder"))

        workers = await supervisor.reconcile_workers(3)
        by_id = {worker.id: worker for worker in workers}
        assert by_id["builder"].status == "stopped"
        assert {worker_id: by_id[worker_id].port for worker_id in ("worker-1", "worker-2", "worker-3")} == {
            "worker-1": 9001,
            "worker-2": 9002,
            "worker-3": 9003,
        }
        await wait_for(_all_running(supervisor, "worker-1", "worker-2", "worker-3"))
        active_ports = [record.port for record in supervisor.records.values() if record.is_active]
        assert sorted(active_ports) == [9001, 9002, 9003]


@pytest.mark.asyncio
async def test_reconcile_port_shortage_changes_nothing(tmp_path, monkeypatch):
    config = make_config(tmp_path, port_range_start=9001, port_range_end=9003)
    async with running_supervisor(config) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="builder"))
        await wait_for(_all_running(supervisor, "builder"))
        before = dict(supervisor.records)

        def exhausted(self, *args, **kwargs):
            raise PortRangeExhausted(self.start, self.end)

        monkeypatch.setattr(PortAllocator, "plan", exhausted)
        with pytest.raises(PortRangeExhausted):
            await supervisor.reconcile_workers(2)
        assert supervisor.records == before
        assert supervisor.controls["builder"].process is not None
        assert "worker-1" not in supervisor.controls


class _SlowCrashStore(WorkerRecordStore):
    async def put(self, record: WorkerRecord) -> None:
        if record.status == "error":
            await asyncio.sleep(0.3)
        await super().put(record)


@pytest.mark.asyncio
async def test_stop_during_crash_write_leaves_no_restart(tmp_path):
    config = make_config(tmp_path, worker_command=list(CRASHER_COMMAND))
    supervisor = WorkerSupervisor(config, store=_SlowCrashStore(config.db_path))
    await supervisor.open()
    try:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        control = supervisor.controls["worker-1"]
        exit_handled = control.exit_handled
        await wait_for(lambda: supervisor.records["worker-1"].status == "error")

        stopped = await supervisor.stop_worker("worker-1")
        assert stopped.status == "stopped"
        await wait_for(exit_handled.is_set)

        assert supervisor.pending_restarts == []
        await asyncio.sleep(0.3)
        assert supervisor.records["worker-1"].status == "stopped"
        assert supervisor.records["worker-1"].restart_count == 0
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_stop_escalates_to_kill_after_grace_period(tmp_path):
    marker = tmp_path / "sigterm-ignored"
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "open(sys.argv[1], 'w').close()\n"
        "time.sleep(60)\n"
    )
    config = make_config(
        tmp_path,
        worker_command=[sys.executable, "-c", code, str(marker)],
        stop_grace_period_ms=400,
    )
    async with running_supervisor(config) as supervisor:
        await supervisor.start_worker(WorkerStartRequest(worker_id="worker-1"))
        await wait_for(marker.exists)

        started = time.monotonic()
        stopped = await supervisor.stop_worker("worker-1")
        elapsed = time.monotonic() - started

        assert stopped.status == "stopped"
        assert stopped.pid is None
        assert stopped.metadata["signal"] == "SIGKILL"
        assert stopped.metadata["stoppedBy"] == "test-manager"
        assert 0.4 <= elapsed < 1.2
        assert supervisor.controls["worker-1"].process is None
        assert supervisor.pending_restarts == []
