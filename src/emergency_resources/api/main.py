#!/usr/bin/env python3
# Copyright 2025 msq
from __future__ import annotations

import uuid

import structlog
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator
from psycopg.rows import DictRow
from psycopg_pool import AsyncConnectionPool
from starlette.middleware.base import BaseHTTPMiddleware

from emergency_resources.allocation import AllocationEngine, ReleaseCoordinator
from emergency_resources.api import resources as resources_api
from emergency_resources.config import AppConfig
from emergency_resources.db.dao import AssignmentRepository, ResourceDAO
from emergency_resources.logging import clear_trace_id, configure_logging, set_trace_id

logger = structlog.get_logger(__name__)

app = FastAPI(title="Emergency Resource Dispatch API")
_cfg = AppConfig.load_from_env()
_pg_pool: AsyncConnectionPool[DictRow] | None = None


class TraceIDMiddleware(BaseHTTPMiddleware):
    """为每个请求注入 trace-id；优先复用客户端传入的 X-Trace-Id。"""

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
        set_trace_id(trace_id)
        try:
            response = await call_next(request)
            response.headers["X-Trace-Id"] = trace_id
            return response
        finally:
            clear_trace_id()


app.add_middleware(TraceIDMiddleware)
Instrumentator().instrument(app).expose(app)
app.include_router(resources_api.router)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.on_event("startup")
async def startup_event() -> None:
    global _pg_pool

    configure_logging(json_logs=_cfg.log_json, log_level=_cfg.log_level)
    if not _cfg.postgres_dsn:
        raise RuntimeError("POSTGRES_DSN 未配置，无法启动服务。")

    _pg_pool = AsyncConnectionPool(
        conninfo=_cfg.postgres_dsn,
        min_size=_cfg.pg_pool_min_size,
        max_size=_cfg.pg_pool_max_size,
        timeout=_cfg.pg_pool_timeout_seconds,
        open=False,
    )
    await _pg_pool.open()

    store = ResourceDAO.create(_pg_pool)
    ledger = AssignmentRepository.create(_pg_pool)
    app.state.resource_store = store
    app.state.assignment_ledger = ledger
    app.state.allocation_engine = AllocationEngine(
        store=store,
        ledger=ledger,
        commit_delay_seconds=_cfg.allocation_commit_delay_seconds,
    )
    app.state.release_coordinator = ReleaseCoordinator(store=store, ledger=ledger)
    logger.info(
        "api_startup_complete",
        pool_min=_cfg.pg_pool_min_size,
        pool_max=_cfg.pg_pool_max_size,
        commit_delay=_cfg.allocation_commit_delay_seconds,
    )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    global _pg_pool

    app.state.allocation_engine = None
    app.state.release_coordinator = None
    app.state.resource_store = None
    app.state.assignment_ledger = None
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None
    logger.info("api_shutdown_complete")
