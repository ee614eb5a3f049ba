from __future__ import annotations

import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError, model_validator

log = logging.getLogger("worker-manager.config")

DEFAULT_WORKER_COMMAND = ["yarn", "run", "start:worker"]
DEFAULT_WORKER_WATCH_COMMAND = ["yarn", "run", "start:worker:watch"]


def _default_db_path(environment: str) -> str:
    return str(Path.home() / ".worker-manager" / environment / "workers.sqlite3")


def _has_text(value: str | None) -> bool:
    return value is not None and value.strip() != ""


def _env_int(env: Mapping[str, str], *names: str) -> int | None:
    for name in names:
        raw = env.get(name)
        if not _has_text(raw):
            continue
        try:
            value = int(raw.strip())
        except ValueError:
            log.warning("Ignoring non-integer %s=%r", name, raw)
            continue
        if value < 0:
            log.warning("Ignoring negative %s=%r", name, raw)
            continue
        return value
    return None


def _env_flag(env: Mapping[str, str], name: str) -> bool | None:
    raw = env.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def resolve_coordinator_url(env: Mapping[str, str]) -> str:
    explicit = env.get("WORKER_COORDINATOR_URL")
    if _has_text(explicit):
        return explicit.strip()
    host = env.get("GATEWAY_HOST") or "127.0.0.1"
    port = _env_int(env, "GATEWAY_PORT") or 3003
    return f"http://{host}:{port}"


def resolve_db_path(env: Mapping[str, str], cwd: Path | None = None) -> str:
    explicit = env.get("WORKER_MANAGER_DB_PATH")
    if _has_text(explicit):
        candidate = Path(explicit.strip()).expanduser()
        if not candidate.is_absolute():
            candidate = (cwd or Path.cwd()) / candidate
        return str(candidate)
    environment = env.get("WORKER_MANAGER_ENVIRONMENT") or env.get("DEFAULT_ENVIRONMENT") or "production"
    return _default_db_path(environment)


class WorkerManagerConfig(BaseModel):
    manager_id: str = "worker-manager"
    db_path: str = Field(default_factory=lambda: _default_db_path("production"))
    host: str = "127.0.0.1"
    port: int = Field(default=3012, ge=1, le=65535)
    port_range_start: int = Field(default=9001, ge=1, le=65535)
    port_range_end: int = Field(default=9099, ge=1, le=65535)
    coordinator_url: str = "http://127.0.0.1:3003"
    desired_count: int = Field(default=1, ge=0)
    watch_mode: bool = False
    worker_command: list[str] = Field(default_factory=lambda: list(DEFAULT_WORKER_COMMAND))
    worker_watch_command: list[str] = Field(default_factory=lambda: list(DEFAULT_WORKER_WATCH_COMMAND))
    workspace_root: str = Field(default_factory=lambda: str(Path.cwd()))
    worker_env: dict[str, str] = Field(default_factory=dict)
    restart_base_delay_ms: int = Field(default=1000, ge=0)
    restart_max_delay_ms: int = Field(default=10000, ge=0)
    min_uptime_ms: int = Field(default=5000, ge=0)
    stop_grace_period_ms: int = Field(default=5000, ge=0)

    @model_validator(mode="after")
    def _validate_ranges(self) -> "WorkerManagerConfig":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"port_range_start ({self.port_range_start}) must not exceed port_range_end ({self.port_range_end})"
            )
        if self.restart_max_delay_ms < self.restart_base_delay_ms:
            raise ValueError("restart_max_delay_ms must be >= restart_base_delay_ms")
        if not self.worker_command:
            raise ValueError("worker_command must not be empty")
        return self

    @property
    def launch_command(self) -> list[str]:
        if self.watch_mode and self.worker_watch_command:
            return list(self.worker_watch_command)
        return list(self.worker_command)

    @property
    def port_capacity(self) -> int:
        return self.port_range_end - self.port_range_start + 1

    @classmethod
    def _read_file(cls, config_path: Path) -> dict[str, Any]:
        if not config_path.exists():
            log.warning("Config file %s not found; using defaults.", config_path)
            return {}
        try:
            raw_text = config_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            log.warning("Failed to read config file %s: %s", config_path, exc)
            return {}
        try:
            data = json.loads(raw_text or "{}")
        except json.JSONDecodeError as exc:
            log.warning("Corrupt config JSON in %s; ignoring it (%s)", config_path, exc)
            return {}
        if not isinstance(data, dict):
            log.warning("Config file %s must hold a JSON object; ignoring it.", config_path)
            return {}
        return data

    @classmethod
    def _env_overrides(cls, env: Mapping[str, str]) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        if _has_text(env.get("WORKER_MANAGER_ID")):
            overrides["manager_id"] = env["WORKER_MANAGER_ID"].strip()
        if _has_text(env.get("WORKER_MANAGER_DB_PATH")) or _has_text(env.get("WORKER_MANAGER_ENVIRONMENT")):
            overrides["db_path"] = resolve_db_path(env)
        if _has_text(env.get("WORKER_MANAGER_HOST")):
            overrides["host"] = env["WORKER_MANAGER_HOST"].strip()
        port = _env_int(env, "WORKER_MANAGER_HTTP_PORT", "WORKER_MANAGER_PORT")
        if port:
            overrides["port"] = port
        range_start = _env_int(env, "WORKER_PORT_RANGE_START")
        if range_start:
            overrides["port_range_start"] = range_start
        range_end = _env_int(env, "WORKER_PORT_RANGE_END")
        if range_end:
            overrides["port_range_end"] = range_end
        if any(_has_text(env.get(name)) for name in ("WORKER_COORDINATOR_URL", "GATEWAY_HOST", "GATEWAY_PORT")):
            overrides["coordinator_url"] = resolve_coordinator_url(env)
        desired = _env_int(env, "WORKER_COUNT")
        if desired is not None:
            overrides["desired_count"] = desired
        watch = _env_flag(env, "SUPERVISOR_WATCH")
        if watch is not None:
            overrides["watch_mode"] = watch
        if _has_text(env.get("WORKER_COMMAND")):
            overrides["worker_command"] = shlex.split(env["WORKER_COMMAND"])
        if _has_text(env.get("WORKER_WATCH_COMMAND")):
            overrides["worker_watch_command"] = shlex.split(env["WORKER_WATCH_COMMAND"])
        if _has_text(env.get("WORKER_MANAGER_WORKSPACE")):
            overrides["workspace_root"] = str(Path(env["WORKER_MANAGER_WORKSPACE"].strip()).expanduser())
        return overrides

    @classmethod
    def load(cls, path: Path | None = None, env: Mapping[str, str] | None = None) -> "WorkerManagerConfig":
        """
        Build the config from an optional JSON file overlaid with environment variables.

        The file is located from ``path`` or ``WORKER_MANAGER_CONFIG``. A missing
        or unreadable file is logged and skipped; an invalid file schema falls
        back to the environment alone. Invalid combined settings (e.g. an
        inverted port range) raise ``ValidationError``.
        """
        env = os.environ if env is None else env
        data: dict[str, Any] = {}
        raw_path = str(path) if path is not None else env.get("WORKER_MANAGER_CONFIG", "")
        if raw_path.strip():
            data = cls._read_file(Path(raw_path.strip()).expanduser())
        overrides = cls._env_overrides(env)
        try:
            return cls.model_validate({**data, **overrides})
        except ValidationError as exc:
            if not data:
                raise
            log.warning("Invalid config file schema in %s; using environment only (%s)", raw_path, exc)
        return cls.model_validate(overrides)
