# Copyright 2025 msq
from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import psycopg
import structlog
from prometheus_client import Counter, Histogram
from psycopg.rows import class_row, dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout
from typing_extensions import Self

from emergency_resources.db.errors import (
    ResourceConflictError,
    ResourceNotFoundError,
    StoreUnavailableError,
)
from emergency_resources.db.models import (
    BOUND_STATUSES,
    OPEN_ASSIGNMENT_STATUSES,
    AssignmentCreateInput,
    AssignmentRecord,
    AssignmentStatus,
    CategoryStats,
    ResourceCategory,
    ResourceCreateInput,
    ResourceFilter,
    ResourceRecord,
    ResourceStats,
    ResourceStatus,
    ResourceTypeCreateInput,
    ResourceTypeRecord,
)

logger = structlog.get_logger(__name__)

DAO_CALL_TOTAL = Counter("dao_call_total", "DAO 调用次数", ["dao", "method", "result"])
DAO_CALL_LATENCY = Histogram("dao_call_duration_seconds", "DAO 调用耗时（秒）", ["dao", "method"])

_RESOURCE_COLUMNS = (
    "r.id::text AS id, "
    "r.identifier, "
    "r.name, "
    "t.name AS type_name, "
    "t.category, "
    "r.status, "
    "r.capacity, "
    "r.location, "
    "r.latitude, "
    "r.longitude, "
    "r.assigned_to_conversation_id, "
    "r.assigned_at, "
    "r.created_at"
)

_ASSIGNMENT_COLUMNS = (
    "id::text AS id, "
    "resource_id::text AS resource_id, "
    "conversation_id, "
    "assigned_by, "
    "status, "
    "notes, "
    "assigned_at, "
    "completed_at"
)

_OPEN_STATUS_VALUES = [status.value for status in OPEN_ASSIGNMENT_STATUSES]

# 解绑后的状态只能是 AVAILABLE/维护/停用；IN_USE/ASSIGNED 必须保持绑定
_UNBOUND_TARGETS = frozenset(ResourceStatus) - BOUND_STATUSES


class _PoolDAO:
    """共享连接池与存储异常转换。"""

    _dao_name = "base"

    def __init__(self, pool: AsyncConnectionPool[Any]) -> None:
        self._pool = pool

    @classmethod
    def create(cls, pool: AsyncConnectionPool[Any]) -> Self:
        if pool is None:
            raise ValueError("pool 不能为空")
        return cls(pool)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            async with self._pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            DAO_CALL_TOTAL.labels(self._dao_name, "connection", "unavailable").inc()
            logger.error("dao_store_unavailable", dao=self._dao_name, error=str(exc))
            raise StoreUnavailableError(str(exc)) from exc

    def _observe(self, method: str, start: float, result: str) -> float:
        duration = time.perf_counter() - start
        DAO_CALL_LATENCY.labels(self._dao_name, method).observe(duration)
        DAO_CALL_TOTAL.labels(self._dao_name, method, result).inc()
        return duration


class ResourceDAO(_PoolDAO):
    """资源实例的查询与状态变更，所有抢占都通过条件更新完成。"""

    _dao_name = "resource"

    async def list_available(
        self,
        filters: Optional[ResourceFilter] = None,
        *,
        limit: Optional[int] = None,
    ) -> list[ResourceRecord]:
        """按创建时间升序返回 AVAILABLE 资源（先入先派）。"""

        start = time.perf_counter()
        filters = filters or {}
        conditions: list[str] = ["r.status = 'AVAILABLE'"]
        params: dict[str, Any] = {}
        category = filters.get("category")
        if category is not None:
            conditions.append("t.category = %(category)s")
            params["category"] = ResourceCategory(category).value
        name_part = filters.get("type_name_contains")
        if name_part:
            # 类型名或资源名包含即命中（大小写不敏感）
            conditions.append("(t.name ILIKE %(pattern)s OR r.name ILIKE %(pattern)s)")
            params["pattern"] = f"%{_escape_like(name_part)}%"
        if filters.get("has_coordinates"):
            conditions.append("r.latitude IS NOT NULL AND r.longitude IS NOT NULL")

        query = (
            f"SELECT {_RESOURCE_COLUMNS} "
            "  FROM operational.resources r "
            "  JOIN operational.resource_types t ON t.id = r.type_id "
            f" WHERE {' AND '.join(conditions)} "
            " ORDER BY r.created_at ASC, r.identifier ASC"
        )
        if limit is not None:
            query += " LIMIT %(limit)s"
            params["limit"] = max(limit, 0)

        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, params)
                rows = list(await cur.fetchall())

        duration = self._observe("list_available", start, "success")
        logger.info(
            "dao_resource_list_available",
            duration_ms=duration * 1000,
            category=params.get("category"),
            type_name_contains=name_part,
            has_coordinates=bool(filters.get("has_coordinates")),
            limit=limit,
            returned=len(rows),
        )
        return rows

    async def list_resources(
        self,
        *,
        status: Optional[ResourceStatus] = None,
        category: Optional[ResourceCategory] = None,
    ) -> list[ResourceRecord]:
        start = time.perf_counter()
        conditions: list[str] = []
        params: dict[str, Any] = {}
        if status is not None:
            conditions.append("r.status = %(status)s")
            params["status"] = ResourceStatus(status).value
        if category is not None:
            conditions.append("t.category = %(category)s")
            params["category"] = ResourceCategory(category).value
        where = f" WHERE {' AND '.join(conditions)} " if conditions else " "
        query = (
            f"SELECT {_RESOURCE_COLUMNS} "
            "  FROM operational.resources r "
            "  JOIN operational.resource_types t ON t.id = r.type_id"
            f"{where}"
            "ORDER BY r.status ASC, t.category ASC, r.name ASC"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, params)
                rows = list(await cur.fetchall())

        duration = self._observe("list_resources", start, "success")
        logger.info(
            "dao_resource_list",
            duration_ms=duration * 1000,
            status=params.get("status"),
            category=params.get("category"),
            returned=len(rows),
        )
        return rows

    async def list_bound(self, incident_id: str) -> list[ResourceRecord]:
        """列出当前绑定在指定事件上的资源。"""

        start = time.perf_counter()
        query = (
            f"SELECT {_RESOURCE_COLUMNS} "
            "  FROM operational.resources r "
            "  JOIN operational.resource_types t ON t.id = r.type_id "
            " WHERE r.assigned_to_conversation_id = %(incident_id)s "
            " ORDER BY r.assigned_at ASC, r.identifier ASC"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, {"incident_id": incident_id})
                rows = list(await cur.fetchall())

        duration = self._observe("list_bound", start, "success")
        logger.info(
            "dao_resource_list_bound",
            duration_ms=duration * 1000,
            incident_id=incident_id,
            returned=len(rows),
        )
        return rows

    async def fetch_resource(self, resource_id: str) -> ResourceRecord | None:
        if _parse_uuid(resource_id) is None:
            return None
        start = time.perf_counter()
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                record = await _select_resource(cur, resource_id)

        self._observe("fetch_resource", start, "found" if record else "not_found")
        return record

    async def commit(self, resource_id: str, incident_id: str) -> ResourceRecord:
        """原子抢占：仅当资源仍为 AVAILABLE 时绑定到事件。

        条件写入失败后才回查，用于区分资源不存在与被他人抢占。
        """

        if _parse_uuid(resource_id) is None:
            raise ResourceNotFoundError(resource_id)
        start = time.perf_counter()
        query = (
            "UPDATE operational.resources AS r "
            "   SET status = 'ASSIGNED', "
            "       assigned_to_conversation_id = %(incident_id)s, "
            "       assigned_at = now(), "
            "       updated_at = now() "
            "  FROM operational.resource_types AS t "
            " WHERE t.id = r.type_id "
            "   AND r.id = %(resource_id)s::uuid "
            "   AND r.status = 'AVAILABLE' "
            f"RETURNING {_RESOURCE_COLUMNS}"
        )
        params = {"resource_id": resource_id, "incident_id": incident_id}
        current_status: str | None = None
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, params)
                record = await cur.fetchone()
            if record is None:
                current_status = await _current_status(conn, resource_id)

        if record is None:
            if current_status is None:
                self._observe("commit", start, "not_found")
                raise ResourceNotFoundError(resource_id)
            self._observe("commit", start, "conflict")
            logger.info(
                "dao_resource_commit_conflict",
                resource_id=resource_id,
                incident_id=incident_id,
                status=current_status,
            )
            raise ResourceConflictError(resource_id, current_status)

        duration = self._observe("commit", start, "success")
        logger.info(
            "dao_resource_commit",
            duration_ms=duration * 1000,
            resource_id=record.id,
            identifier=record.identifier,
            incident_id=incident_id,
        )
        return record

    async def release(self, resource_id: str) -> ResourceRecord:
        """解除绑定并恢复 AVAILABLE；已可用的资源视为成功（幂等）。"""

        if _parse_uuid(resource_id) is None:
            raise ResourceNotFoundError(resource_id)
        start = time.perf_counter()
        query = (
            "UPDATE operational.resources AS r "
            "   SET status = 'AVAILABLE', "
            "       assigned_to_conversation_id = NULL, "
            "       assigned_at = NULL, "
            "       updated_at = now() "
            "  FROM operational.resource_types AS t "
            " WHERE t.id = r.type_id "
            "   AND r.id = %(resource_id)s::uuid "
            "   AND r.status IN ('ASSIGNED', 'IN_USE') "
            f"RETURNING {_RESOURCE_COLUMNS}"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, {"resource_id": resource_id})
                record = await cur.fetchone()
                changed = record is not None
                if record is None:
                    record = await _select_resource(cur, resource_id)

        if record is None:
            self._observe("release", start, "not_found")
            raise ResourceNotFoundError(resource_id)

        duration = self._observe("release", start, "success" if changed else "noop")
        logger.info(
            "dao_resource_release",
            duration_ms=duration * 1000,
            resource_id=record.id,
            changed=changed,
            status=record.status.value,
        )
        return record

    async def release_from(self, resource_id: str, incident_id: str) -> ResourceRecord:
        """仅当资源绑定在指定事件上时才释放。"""

        if _parse_uuid(resource_id) is None:
            raise ResourceNotFoundError(resource_id)
        start = time.perf_counter()
        query = (
            "UPDATE operational.resources AS r "
            "   SET status = 'AVAILABLE', "
            "       assigned_to_conversation_id = NULL, "
            "       assigned_at = NULL, "
            "       updated_at = now() "
            "  FROM operational.resource_types AS t "
            " WHERE t.id = r.type_id "
            "   AND r.id = %(resource_id)s::uuid "
            "   AND r.assigned_to_conversation_id = %(incident_id)s "
            f"RETURNING {_RESOURCE_COLUMNS}"
        )
        params = {"resource_id": resource_id, "incident_id": incident_id}
        current_status: str | None = None
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, params)
                record = await cur.fetchone()
            if record is None:
                current_status = await _current_status(conn, resource_id)

        if record is None:
            self._observe("release_from", start, "not_found")
            if current_status is None:
                raise ResourceNotFoundError(resource_id)
            raise ResourceNotFoundError(resource_id, incident_id)

        duration = self._observe("release_from", start, "success")
        logger.info(
            "dao_resource_release_from",
            duration_ms=duration * 1000,
            resource_id=record.id,
            incident_id=incident_id,
        )
        return record

    async def update_status(self, resource_id: str, status: ResourceStatus) -> ResourceRecord:
        """外部状态调整（维护、停用、到场使用）。

        条件写入保证不会出现"有绑定却可用"或"无绑定却占用"的记录。
        """

        target = ResourceStatus(status)
        if _parse_uuid(resource_id) is None:
            raise ResourceNotFoundError(resource_id)
        binding_condition = (
            "r.assigned_to_conversation_id IS NULL"
            if target in _UNBOUND_TARGETS
            else "r.assigned_to_conversation_id IS NOT NULL"
        )
        start = time.perf_counter()
        query = (
            "UPDATE operational.resources AS r "
            "   SET status = %(status)s, "
            "       updated_at = now() "
            "  FROM operational.resource_types AS t "
            " WHERE t.id = r.type_id "
            "   AND r.id = %(resource_id)s::uuid "
            f"  AND {binding_condition} "
            f"RETURNING {_RESOURCE_COLUMNS}"
        )
        current_status: str | None = None
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, {"resource_id": resource_id, "status": target.value})
                record = await cur.fetchone()
            if record is None:
                current_status = await _current_status(conn, resource_id)

        if record is None:
            if current_status is None:
                self._observe("update_status", start, "not_found")
                raise ResourceNotFoundError(resource_id)
            self._observe("update_status", start, "conflict")
            raise ResourceConflictError(resource_id, current_status)

        duration = self._observe("update_status", start, "success")
        logger.info(
            "dao_resource_update_status",
            duration_ms=duration * 1000,
            resource_id=record.id,
            status=target.value,
        )
        return record

    async def summarize(self) -> ResourceStats:
        start = time.perf_counter()
        query = (
            "SELECT t.category, r.status, count(*) AS total "
            "  FROM operational.resources r "
            "  JOIN operational.resource_types t ON t.id = r.type_id "
            " GROUP BY t.category, r.status"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, {})
                rows = await cur.fetchall()

        stats = ResourceStats()
        for row in rows:
            count = int(row["total"])
            status = ResourceStatus(row["status"])
            bucket = stats.by_category.setdefault(str(row["category"]), CategoryStats())
            stats.total += count
            bucket.total += count
            if status is ResourceStatus.AVAILABLE:
                stats.available += count
                bucket.available += count
            elif status is ResourceStatus.ASSIGNED:
                stats.assigned += count
                bucket.assigned += count
            elif status is ResourceStatus.IN_USE:
                stats.in_use += count
                bucket.in_use += count
            elif status is ResourceStatus.MAINTENANCE:
                stats.maintenance += count
            else:
                stats.out_of_service += count

        duration = self._observe("summarize", start, "success")
        logger.info("dao_resource_summarize", duration_ms=duration * 1000, total=stats.total)
        return stats


class AssignmentRepository(_PoolDAO):
    """调派台账写入与查询。"""

    _dao_name = "assignment"

    async def open_entry(self, payload: AssignmentCreateInput) -> AssignmentRecord:
        """写入一条 ASSIGNED 台账。

        先锁定资源行并确认它仍绑定在本事件上，否则抛出 ResourceNotFoundError。
        锁持有到事务结束，期间其他事件无法释放或抢占该资源；此前遗留的
        未结束台账已失效，先行关闭，以满足"每个资源至多一条未结束台账"的唯一索引。
        """

        if _parse_uuid(payload.resource_id) is None:
            raise ResourceNotFoundError(payload.resource_id, payload.conversation_id)
        start = time.perf_counter()
        lock_binding = (
            "SELECT id FROM operational.resources "
            " WHERE id = %(resource_id)s::uuid "
            "   AND assigned_to_conversation_id = %(conversation_id)s "
            "   FOR UPDATE"
        )
        close_stale = (
            "UPDATE operational.resource_assignments "
            "   SET status = 'COMPLETED', completed_at = now() "
            " WHERE resource_id = %(resource_id)s::uuid "
            "   AND status = ANY(%(open_statuses)s) "
            "RETURNING id::text AS id"
        )
        insert = (
            "INSERT INTO operational.resource_assignments "
            "  (resource_id, conversation_id, assigned_by, status, notes) "
            "VALUES "
            "  (%(resource_id)s::uuid, %(conversation_id)s, %(assigned_by)s, 'ASSIGNED', %(notes)s) "
            f"RETURNING {_ASSIGNMENT_COLUMNS}"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    lock_binding,
                    {"resource_id": payload.resource_id, "conversation_id": payload.conversation_id},
                )
                bound = await cur.fetchone()
                stale: list[Any] = []
                if bound is not None:
                    await cur.execute(
                        close_stale,
                        {"resource_id": payload.resource_id, "open_statuses": _OPEN_STATUS_VALUES},
                    )
                    stale = list(await cur.fetchall())
            if bound is None:
                record = None
            else:
                record = await self._insert_entry(conn, insert, payload)

        if bound is None:
            self._observe("open_entry", start, "not_bound")
            logger.warning(
                "dao_assignment_binding_lost",
                resource_id=payload.resource_id,
                conversation_id=payload.conversation_id,
            )
            raise ResourceNotFoundError(payload.resource_id, payload.conversation_id)
        if record is None:
            raise RuntimeError("插入调派台账失败，未返回记录。")

        duration = self._observe("open_entry", start, "success")
        if stale:
            logger.warning(
                "dao_assignment_stale_entries_closed",
                resource_id=payload.resource_id,
                closed=len(stale),
            )
        logger.info(
            "dao_assignment_open_entry",
            duration_ms=duration * 1000,
            assignment_id=record.id,
            resource_id=record.resource_id,
            conversation_id=record.conversation_id,
        )
        return record

    @staticmethod
    async def _insert_entry(conn: Any, insert: str, payload: AssignmentCreateInput) -> AssignmentRecord | None:
        async with conn.cursor(row_factory=class_row(AssignmentRecord)) as cur:
            await cur.execute(
                insert,
                {
                    "resource_id": payload.resource_id,
                    "conversation_id": payload.conversation_id,
                    "assigned_by": payload.assigned_by,
                    "notes": payload.notes,
                },
            )
            return await cur.fetchone()

    async def close_entries(
        self,
        resource_id: str,
        *,
        incident_id: Optional[str] = None,
        status: AssignmentStatus = AssignmentStatus.COMPLETED,
    ) -> list[AssignmentRecord]:
        """将资源（可选限定事件）未结束的台账置为终态并记录完成时间。"""

        final_status = AssignmentStatus(status)
        if final_status in OPEN_ASSIGNMENT_STATUSES:
            raise ValueError(f"台账只能关闭为终态: {final_status.value}")
        if _parse_uuid(resource_id) is None:
            return []
        start = time.perf_counter()
        conditions = [
            "resource_id = %(resource_id)s::uuid",
            "status = ANY(%(open_statuses)s)",
        ]
        params: dict[str, Any] = {
            "resource_id": resource_id,
            "open_statuses": _OPEN_STATUS_VALUES,
            "status": final_status.value,
        }
        if incident_id is not None:
            conditions.append("conversation_id = %(incident_id)s")
            params["incident_id"] = incident_id
        query = (
            "UPDATE operational.resource_assignments "
            "   SET status = %(status)s, completed_at = now() "
            f" WHERE {' AND '.join(conditions)} "
            f"RETURNING {_ASSIGNMENT_COLUMNS}"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(AssignmentRecord)) as cur:
                await cur.execute(query, params)
                rows = list(await cur.fetchall())

        duration = self._observe("close_entries", start, "success")
        logger.info(
            "dao_assignment_close_entries",
            duration_ms=duration * 1000,
            resource_id=resource_id,
            incident_id=incident_id,
            status=final_status.value,
            closed=len(rows),
        )
        return rows

    async def list_open_for_incident(self, incident_id: str) -> list[AssignmentRecord]:
        start = time.perf_counter()
        query = (
            f"SELECT {_ASSIGNMENT_COLUMNS} "
            "  FROM operational.resource_assignments "
            " WHERE conversation_id = %(incident_id)s "
            "   AND status = ANY(%(open_statuses)s) "
            " ORDER BY assigned_at ASC"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(AssignmentRecord)) as cur:
                await cur.execute(query, {"incident_id": incident_id, "open_statuses": _OPEN_STATUS_VALUES})
                rows = list(await cur.fetchall())

        duration = self._observe("list_open_for_incident", start, "success")
        logger.info(
            "dao_assignment_list_open",
            duration_ms=duration * 1000,
            incident_id=incident_id,
            returned=len(rows),
        )
        return rows

    async def list_for_resource(self, resource_id: str, *, limit: int = 20) -> list[AssignmentRecord]:
        """资源的调派历史（含终态条目），按时间倒序。"""

        if _parse_uuid(resource_id) is None:
            return []
        start = time.perf_counter()
        query = (
            f"SELECT {_ASSIGNMENT_COLUMNS} "
            "  FROM operational.resource_assignments "
            " WHERE resource_id = %(resource_id)s::uuid "
            " ORDER BY assigned_at DESC "
            " LIMIT %(limit)s"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(AssignmentRecord)) as cur:
                await cur.execute(query, {"resource_id": resource_id, "limit": max(limit, 1)})
                rows = list(await cur.fetchall())

        self._observe("list_for_resource", start, "success")
        return rows


class ResourceCatalogRepository(_PoolDAO):
    """资源类型与资源实例的初始化写入。"""

    _dao_name = "catalog"

    async def create_type(self, payload: ResourceTypeCreateInput) -> ResourceTypeRecord:
        start = time.perf_counter()
        query = (
            "INSERT INTO operational.resource_types (name, category, description) "
            "VALUES (%(name)s, %(category)s, %(description)s) "
            "ON CONFLICT (name) DO UPDATE "
            "   SET category = EXCLUDED.category, description = EXCLUDED.description "
            "RETURNING id::text AS id, name, category, description"
        )
        params = {
            "name": payload.name,
            "category": ResourceCategory(payload.category).value,
            "description": payload.description,
        }
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceTypeRecord)) as cur:
                await cur.execute(query, params)
                record = await cur.fetchone()
                if record is None:
                    raise RuntimeError("插入资源类型失败，未返回记录。")

        self._observe("create_type", start, "success")
        logger.info("dao_catalog_create_type", type_id=record.id, name=record.name)
        return record

    async def list_types(self) -> list[ResourceTypeRecord]:
        start = time.perf_counter()
        query = (
            "SELECT id::text AS id, name, category, description "
            "  FROM operational.resource_types "
            " ORDER BY category ASC, name ASC"
        )
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceTypeRecord)) as cur:
                await cur.execute(query, {})
                rows = list(await cur.fetchall())

        self._observe("list_types", start, "success")
        return rows

    async def create_resource(self, payload: ResourceCreateInput) -> ResourceRecord:
        """新建资源实例，初始状态为 AVAILABLE。"""

        start = time.perf_counter()
        query = (
            "WITH inserted AS ( "
            "  INSERT INTO operational.resources "
            "    (identifier, name, type_id, status, capacity, location, latitude, longitude) "
            "  SELECT %(identifier)s, %(name)s, t.id, 'AVAILABLE', %(capacity)s, %(location)s, "
            "         %(latitude)s, %(longitude)s "
            "    FROM operational.resource_types t "
            "   WHERE t.name = %(type_name)s "
            "  RETURNING * "
            ") "
            f"SELECT {_RESOURCE_COLUMNS} "
            "  FROM inserted r "
            "  JOIN operational.resource_types t ON t.id = r.type_id"
        )
        params = {
            "identifier": payload.identifier,
            "name": payload.name,
            "type_name": payload.type_name,
            "capacity": payload.capacity,
            "location": payload.location,
            "latitude": payload.latitude,
            "longitude": payload.longitude,
        }
        async with self._connection() as conn:
            async with conn.cursor(row_factory=class_row(ResourceRecord)) as cur:
                await cur.execute(query, params)
                record = await cur.fetchone()

        if record is None:
            self._observe("create_resource", start, "unknown_type")
            raise ValueError(f"未知的资源类型: {payload.type_name}")
        self._observe("create_resource", start, "success")
        logger.info(
            "dao_catalog_create_resource",
            resource_id=record.id,
            identifier=record.identifier,
            type_name=record.type_name,
        )
        return record

    async def clear_all(self) -> None:
        """按外键顺序清空台账、资源与类型（仅用于重新初始化）。"""

        start = time.perf_counter()
        async with self._connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("DELETE FROM operational.resource_assignments", {})
                await cur.execute("DELETE FROM operational.resources", {})
                await cur.execute("DELETE FROM operational.resource_types", {})

        self._observe("clear_all", start, "success")
        logger.warning("dao_catalog_cleared")


async def _select_resource(cur: Any, resource_id: str) -> ResourceRecord | None:
    await cur.execute(
        f"SELECT {_RESOURCE_COLUMNS} "
        "  FROM operational.resources r "
        "  JOIN operational.resource_types t ON t.id = r.type_id "
        " WHERE r.id = %(resource_id)s::uuid",
        {"resource_id": resource_id},
    )
    return await cur.fetchone()


async def _current_status(conn: Any, resource_id: str) -> str | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT status FROM operational.resources WHERE id = %(resource_id)s::uuid",
            {"resource_id": resource_id},
        )
        row = await cur.fetchone()
    if row is None:
        return None
    return str(row["status"])


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
