from __future__ import annotations

import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import pytest
import pytest_asyncio
from psycopg_pool import AsyncConnectionPool

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, os.fspath(ROOT / "src"))


@pytest.fixture(scope="session")
def anyio_backend():
    """配置pytest-anyio只使用asyncio后端"""
    return "asyncio"


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> Optional[bool]:
    """异步测试执行钩子。

    标注了 anyio/asyncio 的用例交由对应插件管理事件循环；
    其余协程用例使用手动事件循环执行。
    """

    function = pyfuncitem.obj
    if not asyncio.iscoroutinefunction(function):
        return None

    if "anyio" in pyfuncitem.keywords or "asyncio" in pyfuncitem.keywords:
        return None

    signature = inspect.signature(function)
    accepted = {
        name: value
        for name, value in pyfuncitem.funcargs.items()
        if name in signature.parameters
    }

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(function(**accepted))
    finally:
        loop.close()
    return True


# ============================================================================
# 集成测试 Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def postgres_dsn() -> str:
    """提供 PostgreSQL 连接字符串，未配置则跳过测试"""
    dsn = os.getenv("POSTGRES_DSN")
    if not dsn:
        pytest.skip("POSTGRES_DSN 未配置，跳过 PostgreSQL 集成测试")
    return dsn


@pytest_asyncio.fixture
async def async_postgres_pool(postgres_dsn: str) -> AsyncIterator[AsyncConnectionPool[Any]]:
    """提供 PostgreSQL 异步连接池，用于资源存储的并发抢占测试。"""
    pool = AsyncConnectionPool(postgres_dsn, min_size=1, max_size=4, open=False)
    await pool.open()
    await pool.wait(timeout=60.0)
    try:
        yield pool
    finally:
        await pool.close()
