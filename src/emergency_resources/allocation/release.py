from __future__ import annotations

from typing import Sequence

import structlog

from emergency_resources.allocation.models import ReleaseResult
from emergency_resources.db.dao import AssignmentRepository, ResourceDAO
from emergency_resources.db.errors import ResourceNotFoundError, StoreUnavailableError
from emergency_resources.db.models import AssignmentStatus, ResourceRecord

logger = structlog.get_logger(__name__)


class ReleaseCoordinator:
    """将事件占用的资源归还可用池，并关闭对应台账。"""

    def __init__(self, *, store: ResourceDAO, ledger: AssignmentRepository) -> None:
        self._store = store
        self._ledger = ledger

    async def release(self, resource_ids: Sequence[str], incident_id: str) -> ReleaseResult:
        """批量释放绑定在 incident_id 上的资源。

        逐个资源尽力而为：单个资源失败不影响其余资源，失败情况汇总在结果中。
        仅当所有资源都因存储不可用而失败时才抛出 StoreUnavailableError。
        """

        result = ReleaseResult()
        outage: StoreUnavailableError | None = None
        ordered_ids = list(dict.fromkeys(resource_ids))
        for resource_id in ordered_ids:
            try:
                await self._store.release_from(resource_id, incident_id)
            except ResourceNotFoundError as exc:
                result.not_found.append(resource_id)
                logger.warning(
                    "release_resource_not_bound",
                    resource_id=resource_id,
                    incident_id=incident_id,
                    error=str(exc),
                )
            except StoreUnavailableError as exc:
                outage = exc
                result.failed.append(resource_id)
                logger.error("release_resource_failed", resource_id=resource_id, incident_id=incident_id, error=str(exc))
                continue
            else:
                result.released.append(resource_id)

            # 资源已不再绑定本事件时也收尾台账，避免遗留未结束条目
            try:
                closed = await self._ledger.close_entries(
                    resource_id,
                    incident_id=incident_id,
                    status=AssignmentStatus.COMPLETED,
                )
            except StoreUnavailableError as exc:
                outage = exc
                if resource_id not in result.failed:
                    result.failed.append(resource_id)
                logger.error(
                    "release_ledger_close_failed",
                    resource_id=resource_id,
                    incident_id=incident_id,
                    error=str(exc),
                )
                continue
            result.completed_entries += len(closed)

        result.released_count = len(result.released)
        if outage is not None and not result.released and len(result.failed) == len(ordered_ids):
            raise outage
        logger.info(
            "release_complete",
            incident_id=incident_id,
            requested=len(ordered_ids),
            released=result.released_count,
            not_found=len(result.not_found),
            failed=len(result.failed),
            completed_entries=result.completed_entries,
        )
        return result

    async def release_all_for_incident(self, incident_id: str) -> ReleaseResult:
        """事件结案时释放其全部资源（当前绑定 + 仍有未结束台账的资源）。"""

        bound = await self._store.list_bound(incident_id)
        open_entries = await self._ledger.list_open_for_incident(incident_id)
        resource_ids = [item.id for item in bound]
        resource_ids.extend(entry.resource_id for entry in open_entries)
        if not resource_ids:
            logger.info("release_all_nothing_bound", incident_id=incident_id)
            return ReleaseResult()
        return await self.release(resource_ids, incident_id)

    async def release_resource(self, resource_id: str) -> ResourceRecord:
        """不限定事件地释放单个资源，并完成其全部未结束台账。"""

        record = await self._store.release(resource_id)
        closed = await self._ledger.close_entries(resource_id, status=AssignmentStatus.COMPLETED)
        logger.info(
            "release_resource_complete",
            resource_id=resource_id,
            identifier=record.identifier,
            completed_entries=len(closed),
        )
        return record
