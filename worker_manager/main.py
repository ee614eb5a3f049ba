from __future__ import annotations

import argparse
import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from fastapi import FastAPI, Request

from worker_manager.api import health, workers
from worker_manager.api.errors import register_error_handlers
from worker_manager.core.config import WorkerManagerConfig
from worker_manager.core.logging import configure_logging, pop_log_context, push_log_context, shutdown_logging
from worker_manager.core.supervisor import WorkerSupervisor

LOGGER = logging.getLogger("worker-manager")

VERSION = "0.1.0"


async def request_context_middleware(request: Request, call_next: Callable):
    request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex}"
    request.state.request_id = request_id
    token = push_log_context(request_id=request_id, endpoint=str(request.url.path))
    start = time.perf_counter()
    logger = request.app.state.logger
    try:
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request.complete",
            extra={"method": request.method, "status": response.status_code, "duration_ms": duration_ms},
        )
        response.headers["x-request-id"] = request_id
        return response
    except Exception:
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.exception("request.error", extra={"method": request.method, "duration_ms": duration_ms})
        raise
    finally:
        pop_log_context(token)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config: WorkerManagerConfig = app.state.config
    supervisor: WorkerSupervisor = app.state.supervisor
    logger: logging.Logger = app.state.logger
    logger.info("startup.begin", extra={"manager_id": config.manager_id, "db_path": config.db_path})
    await supervisor.open()
    try:
        if app.state.reconcile_on_startup:
            await supervisor.reconcile_workers(config.desired_count)
            logger.info("startup.reconciled", extra={"desired_count": config.desired_count})
        yield
    finally:
        await supervisor.close()
        logger.info("shutdown.complete", extra={"manager_id": config.manager_id})


def create_app(
    config: WorkerManagerConfig | None = None,
    supervisor: WorkerSupervisor | None = None,
    *,
    reconcile_on_startup: bool = True,
) -> FastAPI:
    """Build the HTTP control surface around an explicitly constructed supervisor."""
    config = config or WorkerManagerConfig.load()
    app = FastAPI(title="Worker Manager", version=VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.supervisor = supervisor or WorkerSupervisor(config)
    app.state.logger = LOGGER
    app.state.reconcile_on_startup = reconcile_on_startup
    app.middleware("http")(request_context_middleware)
    register_error_handlers(app)
    app.include_router(health.router)
    app.include_router(workers.router)
    return app


def main() -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Worker process manager")
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--workers", type=int, default=None, help="desired worker count at startup")
    parser.add_argument("--watch", action="store_true", help="launch workers with the watch command")
    args = parser.parse_args()

    configure_logging()
    config = WorkerManagerConfig.load(Path(args.config) if args.config else None)
    updates: dict = {}
    if args.host:
        updates["host"] = args.host
    if args.port is not None:
        updates["port"] = args.port
    if args.workers is not None:
        updates["desired_count"] = args.workers
    if args.watch:
        updates["watch_mode"] = True
    if updates:
        config = WorkerManagerConfig.model_validate({**config.model_dump(), **updates})
    LOGGER.info("server.listen", extra={"host": config.host, "port": config.port})
    try:
        uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)
    finally:
        shutdown_logging()


if __name__ == "__main__":
    main()
