# Copyright 2025 msq
from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from importlib import resources
from typing import Any, Optional, Sequence

import structlog
from psycopg import AsyncConnection
from psycopg_pool import AsyncConnectionPool

from emergency_resources.allocation import ReleaseCoordinator
from emergency_resources.config import AppConfig
from emergency_resources.db.dao import AssignmentRepository, ResourceCatalogRepository, ResourceDAO
from emergency_resources.catalog.seed import seed_catalog
from emergency_resources.logging import configure_logging

logger = structlog.get_logger(__name__)


def load_schema_sql() -> str:
    return resources.files("emergency_resources.db").joinpath("schema.sql").read_text(encoding="utf-8")


async def apply_schema(dsn: str) -> None:
    sql = load_schema_sql()
    async with await AsyncConnection.connect(dsn) as conn:
        async with conn.cursor() as cur:
            await cur.execute(sql)
        await conn.commit()
    logger.info("schema_applied")


async def _with_pool(cfg: AppConfig, action: Any) -> Any:
    pool: AsyncConnectionPool[Any] = AsyncConnectionPool(
        conninfo=cfg.postgres_dsn,  # type: ignore[arg-type]
        min_size=1,
        max_size=cfg.pg_pool_max_size,
        timeout=cfg.pg_pool_timeout_seconds,
        open=False,
    )
    await pool.open()
    try:
        return await action(pool)
    finally:
        await pool.close()


async def _seed(pool: AsyncConnectionPool[Any], reset: bool) -> dict[str, int]:
    return await seed_catalog(ResourceCatalogRepository.create(pool), reset=reset)


async def _stats(pool: AsyncConnectionPool[Any]) -> dict[str, Any]:
    stats = await ResourceDAO.create(pool).summarize()
    return asdict(stats)


async def _release_incident(pool: AsyncConnectionPool[Any], incident_id: str) -> dict[str, Any]:
    coordinator = ReleaseCoordinator(
        store=ResourceDAO.create(pool),
        ledger=AssignmentRepository.create(pool),
    )
    result = await coordinator.release_all_for_incident(incident_id)
    return result.model_dump()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="应急资源库管理：建表、初始化资源、查看统计")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("schema", help="创建 operational 资源表（可重复执行）")
    seed = sub.add_parser("seed", help="写入演练资源目录")
    seed.add_argument("--reset", action="store_true", help="清空现有类型、资源与台账后重建")
    sub.add_parser("stats", help="按状态与大类统计资源")
    release = sub.add_parser("release-incident", help="释放某事件占用的全部资源")
    release.add_argument("incident_id")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    cfg = AppConfig.load_from_env()
    configure_logging(json_logs=cfg.log_json, log_level=cfg.log_level)
    if not cfg.postgres_dsn:
        raise RuntimeError("POSTGRES_DSN must be configured before running resource commands")

    if args.command == "schema":
        asyncio.run(apply_schema(cfg.postgres_dsn))
        return
    if args.command == "seed":
        output: Any = asyncio.run(_with_pool(cfg, lambda pool: _seed(pool, args.reset)))
    elif args.command == "stats":
        output = asyncio.run(_with_pool(cfg, _stats))
    else:
        output = asyncio.run(_with_pool(cfg, lambda pool: _release_incident(pool, args.incident_id)))
    print(json.dumps(output, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
