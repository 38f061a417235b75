from __future__ import annotations

import asyncio
import math
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from emergency_resources.allocation import AllocationEngine, ReleaseCoordinator
from emergency_resources.db.errors import (
    ResourceConflictError,
    ResourceNotFoundError,
    StoreUnavailableError,
)
from emergency_resources.db.models import (
    OPEN_ASSIGNMENT_STATUSES,
    AssignmentCreateInput,
    AssignmentRecord,
    AssignmentStatus,
    ResourceCategory,
    ResourceFilter,
    ResourceRecord,
    ResourceStatus,
)

INCIDENT_LAT = 22.253
INCIDENT_LNG = 84.908
KM_PER_DEGREE = math.pi * 6371.0 / 180.0
_EPOCH = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def north_of_incident(km: float) -> tuple[float, float]:
    """事件点正北 km 公里处的坐标（同经线，距离精确）。"""
    return INCIDENT_LAT + km / KM_PER_DEGREE, INCIDENT_LNG


class InMemoryResourceStore:
    """内存版资源存储：检查与写入之间没有 await，等价于条件更新。"""

    def __init__(self) -> None:
        self.resources: dict[str, ResourceRecord] = {}
        self.commit_calls: list[tuple[str, str]] = []
        self.fail_commit_after: Optional[int] = None
        self.fail_list = False
        self.fail_release_ids: set[str] = set()
        self.steal_on_commit: dict[str, str] = {}

    def add(
        self,
        identifier: str,
        type_name: str,
        category: ResourceCategory,
        *,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        status: ResourceStatus = ResourceStatus.AVAILABLE,
        incident: Optional[str] = None,
    ) -> ResourceRecord:
        record = ResourceRecord(
            id=str(uuid.uuid4()),
            identifier=identifier,
            name=identifier,
            type_name=type_name,
            category=category,
            status=status,
            capacity=1,
            location=None,
            latitude=lat,
            longitude=lng,
            assigned_to_conversation_id=incident,
            assigned_at=_EPOCH if incident else None,
            created_at=_EPOCH + timedelta(seconds=len(self.resources)),
        )
        self.resources[record.id] = record
        return record

    def get(self, resource_id: str) -> ResourceRecord:
        return self.resources[resource_id]

    async def list_available(
        self,
        filters: Optional[ResourceFilter] = None,
        *,
        limit: Optional[int] = None,
    ) -> list[ResourceRecord]:
        await asyncio.sleep(0)
        if self.fail_list:
            raise StoreUnavailableError("store offline")
        filters = filters or {}
        rows = [item for item in self.resources.values() if item.status is ResourceStatus.AVAILABLE]
        category = filters.get("category")
        if category is not None:
            rows = [item for item in rows if item.category == category]
        needle = (filters.get("type_name_contains") or "").lower()
        if needle:
            rows = [item for item in rows if needle in item.type_name.lower() or needle in item.name.lower()]
        if filters.get("has_coordinates"):
            rows = [item for item in rows if item.has_coordinates]
        rows.sort(key=lambda item: (item.created_at, item.identifier))
        if limit is not None:
            rows = rows[:limit]
        return [replace(item) for item in rows]

    async def list_bound(self, incident_id: str) -> list[ResourceRecord]:
        await asyncio.sleep(0)
        return [replace(item) for item in self.resources.values() if item.assigned_to_conversation_id == incident_id]

    async def commit(self, resource_id: str, incident_id: str) -> ResourceRecord:
        await asyncio.sleep(0)
        self.commit_calls.append((resource_id, incident_id))
        if self.fail_commit_after is not None and len(self.commit_calls) > self.fail_commit_after:
            raise StoreUnavailableError("store offline")
        thief = self.steal_on_commit.pop(resource_id, None)
        if thief is not None and resource_id in self.resources:
            self._bind(resource_id, thief)
        record = self.resources.get(resource_id)
        if record is None:
            raise ResourceNotFoundError(resource_id)
        if record.status is not ResourceStatus.AVAILABLE:
            raise ResourceConflictError(resource_id, record.status.value)
        return replace(self._bind(resource_id, incident_id))

    async def release(self, resource_id: str) -> ResourceRecord:
        await asyncio.sleep(0)
        record = self.resources.get(resource_id)
        if record is None:
            raise ResourceNotFoundError(resource_id)
        if record.status in (ResourceStatus.ASSIGNED, ResourceStatus.IN_USE):
            record = self._unbind(resource_id)
        return replace(record)

    async def release_from(self, resource_id: str, incident_id: str) -> ResourceRecord:
        await asyncio.sleep(0)
        if resource_id in self.fail_release_ids:
            raise StoreUnavailableError("store offline")
        record = self.resources.get(resource_id)
        if record is None:
            raise ResourceNotFoundError(resource_id)
        if record.assigned_to_conversation_id != incident_id:
            raise ResourceNotFoundError(resource_id, incident_id)
        return replace(self._unbind(resource_id))

    def _bind(self, resource_id: str, incident_id: str) -> ResourceRecord:
        record = replace(
            self.resources[resource_id],
            status=ResourceStatus.ASSIGNED,
            assigned_to_conversation_id=incident_id,
            assigned_at=datetime.now(timezone.utc),
        )
        self.resources[resource_id] = record
        return record

    def _unbind(self, resource_id: str) -> ResourceRecord:
        record = replace(
            self.resources[resource_id],
            status=ResourceStatus.AVAILABLE,
            assigned_to_conversation_id=None,
            assigned_at=None,
        )
        self.resources[resource_id] = record
        return record


class InMemoryLedger:
    """内存版台账：写入前确认资源仍绑定在该事件上（与行锁校验等价）。"""

    def __init__(self, store: Optional[InMemoryResourceStore] = None) -> None:
        self.entries: list[AssignmentRecord] = []
        self.fail_open = False
        self.store = store
        # 在写台账前被外部释放的资源
        self.release_before_open: set[str] = set()

    def open_for(self, resource_id: str) -> list[AssignmentRecord]:
        return [entry for entry in self.entries if entry.resource_id == resource_id and entry.is_open]

    async def open_entry(self, payload: AssignmentCreateInput) -> AssignmentRecord:
        await asyncio.sleep(0)
        if self.fail_open:
            raise StoreUnavailableError("ledger offline")
        if self.store is not None:
            if payload.resource_id in self.release_before_open:
                self.release_before_open.discard(payload.resource_id)
                self.store._unbind(payload.resource_id)
            record = self.store.resources.get(payload.resource_id)
            if record is None or record.assigned_to_conversation_id != payload.conversation_id:
                raise ResourceNotFoundError(payload.resource_id, payload.conversation_id)
        self._close(payload.resource_id, None, AssignmentStatus.COMPLETED)
        entry = AssignmentRecord(
            id=f"entry-{len(self.entries) + 1}",
            resource_id=payload.resource_id,
            conversation_id=payload.conversation_id,
            assigned_by=payload.assigned_by,
            status=AssignmentStatus.ASSIGNED,
            notes=payload.notes,
            assigned_at=datetime.now(timezone.utc),
            completed_at=None,
        )
        self.entries.append(entry)
        return entry

    async def close_entries(
        self,
        resource_id: str,
        *,
        incident_id: Optional[str] = None,
        status: AssignmentStatus = AssignmentStatus.COMPLETED,
    ) -> list[AssignmentRecord]:
        await asyncio.sleep(0)
        if status in OPEN_ASSIGNMENT_STATUSES:
            raise ValueError(status)
        return self._close(resource_id, incident_id, status)

    async def list_open_for_incident(self, incident_id: str) -> list[AssignmentRecord]:
        await asyncio.sleep(0)
        return [entry for entry in self.entries if entry.conversation_id == incident_id and entry.is_open]

    def _close(
        self,
        resource_id: str,
        incident_id: Optional[str],
        status: AssignmentStatus,
    ) -> list[AssignmentRecord]:
        closed: list[AssignmentRecord] = []
        for index, entry in enumerate(self.entries):
            if entry.resource_id != resource_id or not entry.is_open:
                continue
            if incident_id is not None and entry.conversation_id != incident_id:
                continue
            updated = replace(entry, status=status, completed_at=datetime.now(timezone.utc))
            self.entries[index] = updated
            closed.append(updated)
        return closed


@pytest.fixture
def store() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture
def ledger(store: InMemoryResourceStore) -> InMemoryLedger:
    return InMemoryLedger(store)


@pytest.fixture
def engine(store: InMemoryResourceStore, ledger: InMemoryLedger) -> AllocationEngine:
    return AllocationEngine(store=store, ledger=ledger, commit_delay_seconds=0)  # type: ignore[arg-type]


@pytest.fixture
def coordinator(store: InMemoryResourceStore, ledger: InMemoryLedger) -> ReleaseCoordinator:
    return ReleaseCoordinator(store=store, ledger=ledger)  # type: ignore[arg-type]
