from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence, Union

from worker_manager.core.config import WorkerManagerConfig
from worker_manager.core.errors import InvalidSignal, InvalidWorkerId, PortRangeExhausted, SupervisorShuttingDown
from worker_manager.core.health import build_health
from worker_manager.core.ports import PortAllocator
from worker_manager.core.reconcile import desired_worker_ids, plan_reconcile, validate_desired_count
from worker_manager.core.store import WorkerRecordStore
from worker_manager.types import WorkerManagerHealth, WorkerRecord, WorkerStartRequest, now_iso

LOGGER = logging.getLogger("worker-manager.supervisor")

_WORKER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def parse_stop_signal(value: str | None) -> signal.Signals | None:
    """Map ``"SIGTERM"``/``"term"``/``"15"`` style input to a signal, None when blank."""
    if value is None or not value.strip():
        return None
    raw = value.strip().upper()
    if raw.isdigit():
        try:
            return signal.Signals(int(raw))
        except ValueError:
            raise InvalidSignal(f"Unknown signal {value!r}") from None
    name = raw if raw.startswith("SIG") else f"SIG{raw}"
    try:
        return signal.Signals[name]
    except KeyError:
        raise InvalidSignal(f"Unknown signal {value!r}") from None


def describe_exit(returncode: int | None) -> dict[str, Any]:
    if returncode is None:
        return {}
    if returncode < 0:
        try:
            return {"signal": signal.Signals(-returncode).name}
        except ValueError:
            return {"signal": str(-returncode)}
    return {"exitCode": returncode}


@dataclass
class ProcessLaunched:
    worker_id: str
    process: asyncio.subprocess.Process


@dataclass
class ProcessExited:
    worker_id: str
    process: asyncio.subprocess.Process
    returncode: int | None


WorkerEvent = Union[ProcessLaunched, ProcessExited]

ProcessLauncher = Callable[[Sequence[str], str, Mapping[str, str]], Awaitable[asyncio.subprocess.Process]]


async def launch_process(command: Sequence[str], cwd: str, env: Mapping[str, str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(*command, cwd=cwd, env=dict(env))


@dataclass
class WorkerControl:
    restart_delay_ms: int
    process: asyncio.subprocess.Process | None = None
    expected_running: bool = False
    last_started_at: float = 0.0
    exit_handled: asyncio.Event | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class WorkerSupervisor:
    """Owns the worker processes and their persisted records.

    Process notifications go through one event queue drained by a single
    dispatcher task. Lifecycle commands for one worker id (spawn, stop,
    timed restart) hold that worker's lock. The dispatcher never takes a
    worker lock, which is what lets ``stop_worker`` wait for the exit handler
    while holding it.

    The in-memory ``records`` map is updated before every store write, so it
    always reflects the latest transition.
    """

    def __init__(
        self,
        config: WorkerManagerConfig,
        store: WorkerRecordStore | None = None,
        launcher: ProcessLauncher | None = None,
    ):
        self.config = config
        self.manager_id = config.manager_id
        self.store = store or WorkerRecordStore(config.db_path)
        self.launcher = launcher or launch_process
        self.ports = PortAllocator(config.port_range_start, config.port_range_end)
        self.records: dict[str, WorkerRecord] = {}
        self.controls: dict[str, WorkerControl] = {}
        self._restart_timers: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task] = set()
        self._events: asyncio.Queue[WorkerEvent] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._open_lock = asyncio.Lock()
        self._opened = False
        self._shutting_down = False

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def pending_restarts(self) -> list[str]:
        return sorted(self._restart_timers)

    # lifecycle

    async def open(self) -> None:
        if self._opened:
            return
        async with self._open_lock:
            if self._opened:
                return
            await self.store.open()
            self._shutting_down = False
            self._events = asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch_events(), name="worker-manager-dispatcher")
            try:
                recovered = await self.store.list()
                for record in recovered:
                    self.records[record.id] = record
                    self.controls[record.id] = self._new_control()
                    await self._update_record(
                        record.id,
                        status="stopped",
                        pid=None,
                        metadata={**record.metadata, "recoveredAt": now_iso()},
                    )
            except BaseException:
                await self._stop_dispatcher()
                await self.store.close()
                raise
            self._opened = True
        LOGGER.info(
            "supervisor.opened",
            extra={"manager_id": self.manager_id, "recovered": len(recovered), "db_path": str(self.store.db_path)},
        )

    async def close(self) -> None:
        if not self._opened:
            return
        self._shutting_down = True
        for worker_id in list(self._restart_timers):
            self._cancel_restart(worker_id)
        worker_ids = sorted(set(self.controls) | set(self.records))
        results = await asyncio.gather(
            *(self.stop_worker(worker_id, signal.SIGTERM) for worker_id in worker_ids),
            return_exceptions=True,
        )
        for worker_id, result in zip(worker_ids, results):
            if isinstance(result, BaseException):
                LOGGER.error("worker.stop.failed", extra={"worker_id": worker_id}, exc_info=result)
        await self._stop_dispatcher()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.store.close()
        self._opened = False
        LOGGER.info("supervisor.closed", extra={"manager_id": self.manager_id, "workers": len(worker_ids)})

    # queries

    async def list_workers(self) -> list[WorkerRecord]:
        await self._ensure_readable()
        return [self.records[worker_id] for worker_id in sorted(self.records)]

    async def get_worker(self, worker_id: str) -> WorkerRecord | None:
        await self._ensure_readable()
        record = self.records.get(worker_id)
        if record is not None or not self.store.is_open:
            return record
        return await self.store.get(worker_id)

    async def health(self) -> WorkerManagerHealth:
        return build_health(await self.list_workers(), self.manager_id, os.getpid())

    # commands

    async def start_worker(self, request: WorkerStartRequest | None = None) -> WorkerRecord:
        await self._ensure_accepting()
        request = request or WorkerStartRequest()
        worker_id = self._resolve_worker_id(request.worker_id)
        control = self._control(worker_id)
        async with control.lock:
            if self._shutting_down:
                raise SupervisorShuttingDown("Worker manager is shutting down")
            try:
                return await self._spawn(worker_id, request.port)
            except PortRangeExhausted:
                if worker_id not in self.records:
                    self.controls.pop(worker_id, None)
                raise

    async def stop_worker(self, worker_id: str, sig: signal.Signals | None = None) -> WorkerRecord | None:
        await self._ensure_readable()
        if worker_id not in self.records and worker_id not in self.controls:
            return None
        control = self._control(worker_id)
        control.expected_running = False
        self._cancel_restart(worker_id)
        async with control.lock:
            control.expected_running = False
            self._cancel_restart(worker_id)
            process = control.process
            if process is None:
                if worker_id not in self.records:
                    return None
                return await self._update_record(worker_id, status="stopped", pid=None)
            return await self._terminate(worker_id, control, process, sig or signal.SIGTERM)

    async def reconcile_workers(self, desired_count: int) -> list[WorkerRecord]:
        await self._ensure_accepting()
        count = validate_desired_count(desired_count, self.ports.capacity)
        desired = desired_worker_ids(count)
        plan = plan_reconcile(
            desired,
            self.records,
            live_ids=[worker_id for worker_id, control in self.controls.items() if control.process is not None],
            pending_restart_ids=list(self._restart_timers),
            known_ids=list(self.controls),
        )
        # ports are settled before anything is stopped or spawned
        planned_ports = self.ports.plan(plan.to_start, self.records, releasing=plan.to_stop)
        LOGGER.info(
            "workers.reconcile",
            extra={"desired_count": count, "to_stop": plan.to_stop, "to_start": plan.to_start},
        )
        if plan.to_stop:
            await asyncio.gather(*(self.stop_worker(worker_id, signal.SIGTERM) for worker_id in plan.to_stop))
        for worker_id in plan.to_start:
            control = self._control(worker_id)
            async with control.lock:
                if self._shutting_down:
                    raise SupervisorShuttingDown("Worker manager is shutting down")
                await self._spawn(worker_id, planned_ports.get(worker_id))
        return await self.list_workers()

    # internals

    def _new_control(self) -> WorkerControl:
        return WorkerControl(restart_delay_ms=self.config.restart_base_delay_ms)

    def _control(self, worker_id: str) -> WorkerControl:
        control = self.controls.get(worker_id)
        if control is None:
            control = self._new_control()
            self.controls[worker_id] = control
        return control

    async def _ensure_readable(self) -> None:
        if not self._opened and not self._shutting_down:
            await self.open()

    async def _ensure_accepting(self) -> None:
        if self._shutting_down:
            raise SupervisorShuttingDown("Worker manager is shutting down")
        await self.open()

    def _resolve_worker_id(self, requested: str | None) -> str:
        if requested is not None and requested.strip():
            worker_id = requested.strip()
            if not _WORKER_ID_PATTERN.match(worker_id):
                raise InvalidWorkerId(f"Invalid worker id {requested!r}")
            return worker_id
        index = 1
        while f"worker-{index}" in self.records or f"worker-{index}" in self.controls:
            index += 1
        return f"worker-{index}"

    async def _update_record(self, worker_id: str, **changes: Any) -> WorkerRecord:
        existing = self.records.get(worker_id)
        if existing is not None:
            data = existing.model_dump()
        else:
            data = {"id": worker_id, "name": worker_id, "kind": "worker", "status": "stopped", "restart_count": 0}
        data.update(changes)
        data["managed_by"] = self.manager_id
        data["updated_at"] = now_iso()
        record = WorkerRecord.model_validate(data)
        self.records[worker_id] = record
        await self.store.put(record)
        return record

    def _worker_env(self, worker_id: str, port: int) -> dict[str, str]:
        return {
            **os.environ,
            **self.config.worker_env,
            "WORKER_ID": worker_id,
            "WORKER_SERVER_PORT": str(port),
            "WORKER_COORDINATOR_URL": self.config.coordinator_url,
        }

    async def _spawn(self, worker_id: str, preferred_port: int | None = None, from_restart: bool = False) -> WorkerRecord:
        # caller holds the worker lock
        control = self._control(worker_id)
        existing = self.records.get(worker_id)
        if control.process is not None and existing is not None:
            return existing
        self._cancel_restart(worker_id)
        port = self.ports.reserve(worker_id, self.records, preferred_port)
        restart_count = existing.restart_count if existing is not None else 0
        if from_restart:
            restart_count += 1
        metadata = {"coordinatorUrl": self.config.coordinator_url}
        await self._update_record(
            worker_id,
            status="starting",
            pid=None,
            port=port,
            restart_count=restart_count,
            metadata=metadata,
        )
        command = self.config.launch_command
        try:
            process = await self.launcher(command, self.config.workspace_root, self._worker_env(worker_id, port))
        except OSError as exc:
            control.expected_running = False
            LOGGER.error(
                "worker.spawn_failed",
                extra={"worker_id": worker_id, "command": command, "port": port, "error": str(exc)},
            )
            return await self._update_record(worker_id, status="error", pid=None, metadata={**metadata, "error": str(exc)})

        control.process = process
        control.expected_running = True
        control.last_started_at = time.monotonic()
        control.exit_handled = asyncio.Event()
        record = await self._update_record(worker_id, status="starting", pid=process.pid, started_at=now_iso())
        self._post(ProcessLaunched(worker_id, process))
        self._track(asyncio.create_task(self._watch_process(worker_id, process)))
        LOGGER.info(
            "worker.spawned",
            extra={
                "worker_id": worker_id,
                "pid": process.pid,
                "port": port,
                "restart_count": restart_count,
                "from_restart": from_restart,
            },
        )
        return record

    async def _terminate(
        self,
        worker_id: str,
        control: WorkerControl,
        process: asyncio.subprocess.Process,
        sig: signal.Signals,
    ) -> WorkerRecord:
        await self._update_record(worker_id, status="stopping")
        grace = self.config.stop_grace_period_ms / 1000
        exit_handled = control.exit_handled
        LOGGER.info("worker.stopping", extra={"worker_id": worker_id, "pid": process.pid, "signal": sig.name})
        self._send_signal(process, sig)
        if not await self._wait_exit_handled(exit_handled, grace):
            LOGGER.warning("worker.stop.timeout", extra={"worker_id": worker_id, "pid": process.pid, "grace_ms": self.config.stop_grace_period_ms})
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            if not await self._wait_exit_handled(exit_handled, grace):
                LOGGER.error("worker.stop.abandoned", extra={"worker_id": worker_id, "pid": process.pid})
                if control.process is process:
                    control.process = None
        current = self.records[worker_id]
        return await self._update_record(
            worker_id,
            status="stopped",
            pid=None,
            metadata={**current.metadata, "stoppedBy": self.manager_id},
        )

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)

    @staticmethod
    async def _wait_exit_handled(event: asyncio.Event | None, timeout: float) -> bool:
        if event is None:
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _watch_process(self, worker_id: str, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        self._post(ProcessExited(worker_id, process, returncode))

    def _post(self, event: WorkerEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)

    async def _dispatch_events(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, ProcessLaunched):
                    await self._handle_launched(event)
                else:
                    await self._handle_exit(event)
            except Exception:
                LOGGER.exception("supervisor.event_failed", extra={"worker_id": event.worker_id})
            finally:
                self._events.task_done()

    async def _stop_dispatcher(self) -> None:
        if self._dispatcher is None:
            return
        self._dispatcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher
        self._dispatcher = None

    async def _handle_launched(self, event: ProcessLaunched) -> None:
        control = self.controls.get(event.worker_id)
        record = self.records.get(event.worker_id)
        if control is None or control.process is not event.process or record is None:
            return
        if record.status != "starting":
            return
        await self._update_record(event.worker_id, status="running", pid=event.process.pid)
        LOGGER.info("worker.running", extra={"worker_id": event.worker_id, "pid": event.process.pid, "port": record.port})

    async def _handle_exit(self, event: ProcessExited) -> None:
        worker_id = event.worker_id
        control = self.controls.get(worker_id)
        if control is None or control.process is not event.process:
            LOGGER.debug("worker.exit.stale", extra={"worker_id": worker_id, "pid": event.process.pid})
            return
        control.process = None
        exit_info = describe_exit(event.returncode)
        metadata = {"coordinatorUrl": self.config.coordinator_url, **exit_info}
        try:
            if not control.expected_running or self._shutting_down:
                await self._update_record(worker_id, status="stopped", pid=None, metadata=metadata)
                LOGGER.info("worker.exit", extra={"worker_id": worker_id, "pid": event.process.pid, **_snake(exit_info)})
                return
            uptime_ms = (time.monotonic() - control.last_started_at) * 1000
            if uptime_ms > self.config.min_uptime_ms:
                delay_ms = self.config.restart_base_delay_ms
            else:
                delay_ms = min(control.restart_delay_ms * 2, self.config.restart_max_delay_ms)
            control.restart_delay_ms = delay_ms
            await self._update_record(
                worker_id,
                status="error",
                pid=None,
                metadata={**metadata, "restartDelayMs": delay_ms},
            )
            LOGGER.warning(
                "worker.crashed",
                extra={
                    "worker_id": worker_id,
                    "pid": event.process.pid,
                    "uptime_ms": round(uptime_ms, 2),
                    "restart_delay_ms": delay_ms,
                    **_snake(exit_info),
                },
            )
            # a stop may have landed while the crash was being written
            if control.expected_running and not self._shutting_down:
                self._schedule_restart(worker_id, delay_ms)
        finally:
            if control.exit_handled is not None:
                control.exit_handled.set()

    def _schedule_restart(self, worker_id: str, delay_ms: int) -> None:
        self._cancel_restart(worker_id)
        loop = asyncio.get_running_loop()
        self._restart_timers[worker_id] = loop.call_later(delay_ms / 1000, self._fire_restart, worker_id)
        LOGGER.info("worker.restart.scheduled", extra={"worker_id": worker_id, "restart_delay_ms": delay_ms})

    def _cancel_restart(self, worker_id: str) -> None:
        timer = self._restart_timers.pop(worker_id, None)
        if timer is not None:
            timer.cancel()

    def _fire_restart(self, worker_id: str) -> None:
        self._restart_timers.pop(worker_id, None)
        if self._shutting_down:
            return
        self._track(asyncio.create_task(self._restart_worker(worker_id)))

    async def _restart_worker(self, worker_id: str) -> None:
        control = self._control(worker_id)
        async with control.lock:
            if self._shutting_down or not control.expected_running or control.process is not None:
                return
            record = self.records.get(worker_id)
            await self._spawn(worker_id, record.port if record else None, from_restart=True)

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("supervisor.background_failed", extra={"task": task.get_name()}, exc_info=exc)


def _snake(exit_info: dict[str, Any]) -> dict[str, Any]:
    return {"exit_code" if key == "exitCode" else key: value for key, value in exit_info.items()}
