# Copyright 2025 msq
from __future__ import annotations

import asyncio
from typing import Iterable, Optional, Sequence, Union

import structlog
from prometheus_client import Counter

from emergency_resources.allocation.models import (
    DEFAULT_REQUIREMENTS,
    AssignedResource,
    ExplicitAssignmentResult,
    NearestAssignmentResult,
    ResourceRequirement,
)
from emergency_resources.db.dao import AssignmentRepository, ResourceDAO
from emergency_resources.db.errors import (
    ResourceConflictError,
    ResourceNotFoundError,
    StoreUnavailableError,
)
from emergency_resources.db.models import (
    AssignmentCreateInput,
    AssignmentStatus,
    ResourceFilter,
    ResourceRecord,
)
from emergency_resources.geo.distance import distance_km, validate_coordinates

logger = structlog.get_logger(__name__)

ALLOCATION_CALL_TOTAL = Counter(
    "resource_allocation_total",
    "资源调派调用次数",
    ["mode", "result"],
)
ALLOCATION_COMMIT_TOTAL = Counter(
    "resource_allocation_commit_total",
    "单个资源抢占结果",
    ["mode", "result"],
)

PartialResult = Union[list[AssignedResource], NearestAssignmentResult, ExplicitAssignmentResult]


class AllocationInterruptedError(StoreUnavailableError):
    """调派过程中存储不可用；partial_result 为中断前已持久化的结果。"""

    def __init__(self, message: str, partial_result: PartialResult) -> None:
        super().__init__(message)
        self.partial_result = partial_result


class AllocationEngine:
    """资源调派引擎。

    两种入口：
    - assign_by_type：无事件坐标时按类型名先入先派；
    - assign_nearest：有事件坐标时按需求逐条选最近的可用资源。

    每次抢占都是独立持久化的条件写入，调用中途失败时保留已完成的部分，
    不做整体回滚。引擎不保存跨调用状态。
    """

    def __init__(
        self,
        *,
        store: ResourceDAO,
        ledger: AssignmentRepository,
        commit_delay_seconds: float = 0.1,
        default_requirements: Sequence[ResourceRequirement] = DEFAULT_REQUIREMENTS,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._commit_delay = max(commit_delay_seconds, 0.0)
        self._default_requirements = tuple(default_requirements)

    async def assign_by_type(
        self,
        resource_type: str,
        count: int,
        incident_id: str,
        *,
        assigned_by: Optional[str] = "system",
        notes: Optional[str] = None,
    ) -> list[AssignedResource]:
        """按类型名（或资源名）子串调派最多 count 个资源。

        返回成功调派的资源列表，调用方与 count 比较即可判断是否部分满足。
        没有可用资源时返回空列表。
        """

        if count <= 0:
            return []
        log = logger.bind(incident_id=incident_id, resource_type=resource_type, count=count)
        assigned: list[AssignedResource] = []
        try:
            candidates = await self._store.list_available(
                ResourceFilter(type_name_contains=resource_type),
                limit=count,
            )
        except StoreUnavailableError as exc:
            ALLOCATION_CALL_TOTAL.labels("by_type", "store_unavailable").inc()
            raise AllocationInterruptedError(str(exc), assigned) from exc

        if not candidates:
            ALLOCATION_CALL_TOTAL.labels("by_type", "no_candidates").inc()
            log.info("assign_by_type_no_candidates")
            return assigned

        log.info("assign_by_type_candidates", found=len(candidates))
        for index, candidate in enumerate(candidates):
            if index > 0 and self._commit_delay:
                await asyncio.sleep(self._commit_delay)
            try:
                item = await self._commit_one(
                    candidate,
                    incident_id,
                    assigned_by=assigned_by,
                    notes=notes,
                    mode="by_type",
                )
            except StoreUnavailableError as exc:
                ALLOCATION_CALL_TOTAL.labels("by_type", "store_unavailable").inc()
                log.error("assign_by_type_interrupted", assigned=len(assigned), error=str(exc))
                if isinstance(exc, AllocationInterruptedError):
                    assigned.extend(exc.partial_result)  # type: ignore[arg-type]
                raise AllocationInterruptedError(str(exc), assigned) from exc
            if item is not None:
                assigned.append(item)

        ALLOCATION_CALL_TOTAL.labels("by_type", "success" if assigned else "empty").inc()
        log.info(
            "assign_by_type_complete",
            assigned=len(assigned),
            candidates=len(candidates),
            success_rate=round(len(assigned) / len(candidates) * 100, 1),
        )
        return assigned

    async def assign_nearest(
        self,
        incident_lat: float,
        incident_lng: float,
        incident_id: str,
        requirements: Optional[Sequence[ResourceRequirement]] = None,
        *,
        assigned_by: Optional[str] = "system",
    ) -> NearestAssignmentResult:
        """按需求清单为事件调派距离最近的可用资源。

        需求按给定顺序处理；同一次调用中已抢占（或抢占失败）的资源会从候选池
        中剔除，避免两条需求命中同一资源。数量不足时记录缺口描述。
        """

        validate_coordinates(incident_lat, incident_lng)
        plan = list(requirements) if requirements else list(self._default_requirements)
        log = logger.bind(incident_id=incident_id, lat=incident_lat, lng=incident_lng)
        result = NearestAssignmentResult()

        try:
            pool = await self._store.list_available(ResourceFilter(has_coordinates=True))
        except StoreUnavailableError as exc:
            ALLOCATION_CALL_TOTAL.labels("nearest", "store_unavailable").inc()
            raise AllocationInterruptedError(str(exc), result) from exc

        log.info("assign_nearest_started", requirements=len(plan), pool=len(pool))
        claimed: set[str] = set()

        for requirement in plan:
            ranked = _rank_candidates(
                (item for item in pool if item.id not in claimed and _matches(item, requirement)),
                incident_lat,
                incident_lng,
                requirement.max_distance_km,
            )
            fulfilled = 0
            for distance, candidate in ranked:
                if fulfilled >= requirement.count:
                    break
                claimed.add(candidate.id)
                try:
                    item = await self._commit_one(
                        candidate,
                        incident_id,
                        assigned_by=assigned_by,
                        notes=None,
                        mode="nearest",
                        distance=distance,
                    )
                except StoreUnavailableError as exc:
                    if isinstance(exc, AllocationInterruptedError):
                        for partial in exc.partial_result:  # type: ignore[union-attr]
                            result.assigned_resources.append(partial)
                            result.total_distance += partial.distance_km or 0.0
                    result.success = bool(result.assigned_resources)
                    ALLOCATION_CALL_TOTAL.labels("nearest", "store_unavailable").inc()
                    log.error(
                        "assign_nearest_interrupted",
                        assigned=len(result.assigned_resources),
                        error=str(exc),
                    )
                    raise AllocationInterruptedError(str(exc), result) from exc
                if item is None:
                    continue
                fulfilled += 1
                result.assigned_resources.append(item)
                result.total_distance += distance

            if fulfilled < requirement.count:
                shortfall = requirement.describe_shortfall(fulfilled)
                result.unavailable_requirements.append(shortfall)
                log.warning(
                    "assign_nearest_shortfall",
                    requirement=shortfall,
                    candidates=len(ranked),
                )

        result.success = bool(result.assigned_resources)
        ALLOCATION_CALL_TOTAL.labels("nearest", "success" if result.success else "no_capacity").inc()
        log.info(
            "assign_nearest_complete",
            assigned=len(result.assigned_resources),
            unavailable=len(result.unavailable_requirements),
            total_distance_km=round(result.total_distance, 3),
        )
        return result

    async def assign_resources(
        self,
        resource_ids: Sequence[str],
        incident_id: str,
        *,
        assigned_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ExplicitAssignmentResult:
        """按资源ID手动调派：要么全部成功，要么撤销本次已抢占的资源。"""

        ordered_ids = list(dict.fromkeys(resource_ids))
        log = logger.bind(incident_id=incident_id, requested=len(ordered_ids))
        committed: list[AssignedResource] = []
        for resource_id in ordered_ids:
            try:
                record = await self._store.commit(resource_id, incident_id)
            except (ResourceConflictError, ResourceNotFoundError) as exc:
                ALLOCATION_COMMIT_TOTAL.labels("explicit", type(exc).__name__).inc()
                log.warning("assign_resources_unavailable", resource_id=resource_id, error=str(exc))
                await self._rollback(committed, incident_id)
                ALLOCATION_CALL_TOTAL.labels("explicit", "rolled_back").inc()
                return ExplicitAssignmentResult(
                    success=False,
                    unavailable_resource_ids=[resource_id],
                )
            except StoreUnavailableError as exc:
                ALLOCATION_CALL_TOTAL.labels("explicit", "store_unavailable").inc()
                raise AllocationInterruptedError(
                    str(exc),
                    ExplicitAssignmentResult(success=False, assigned_resources=committed),
                ) from exc

            ALLOCATION_COMMIT_TOTAL.labels("explicit", "success").inc()
            try:
                entry = await self._ledger.open_entry(
                    AssignmentCreateInput(
                        resource_id=record.id,
                        conversation_id=incident_id,
                        assigned_by=assigned_by,
                        notes=notes,
                    )
                )
            except StoreUnavailableError as exc:
                committed.append(AssignedResource.from_record(record))
                raise AllocationInterruptedError(
                    str(exc),
                    ExplicitAssignmentResult(success=False, assigned_resources=committed),
                ) from exc
            except ResourceNotFoundError as exc:
                ALLOCATION_COMMIT_TOTAL.labels("explicit", "binding_lost").inc()
                log.warning("assign_resources_binding_lost", resource_id=resource_id, error=str(exc))
                await self._rollback(committed, incident_id)
                ALLOCATION_CALL_TOTAL.labels("explicit", "rolled_back").inc()
                return ExplicitAssignmentResult(
                    success=False,
                    unavailable_resource_ids=[resource_id],
                )
            committed.append(AssignedResource.from_record(record, assignment_id=entry.id))

        ALLOCATION_CALL_TOTAL.labels("explicit", "success").inc()
        log.info("assign_resources_complete", assigned=len(committed))
        return ExplicitAssignmentResult(success=bool(committed), assigned_resources=committed)

    async def _commit_one(
        self,
        candidate: ResourceRecord,
        incident_id: str,
        *,
        assigned_by: Optional[str],
        notes: Optional[str],
        mode: str,
        distance: Optional[float] = None,
    ) -> AssignedResource | None:
        """抢占单个资源并写台账；被抢占或已不存在时返回 None。"""

        try:
            record = await self._store.commit(candidate.id, incident_id)
        except ResourceConflictError as exc:
            ALLOCATION_COMMIT_TOTAL.labels(mode, "conflict").inc()
            logger.info(
                "allocation_commit_conflict",
                resource_id=candidate.id,
                identifier=candidate.identifier,
                incident_id=incident_id,
                status=exc.status,
            )
            return None
        except ResourceNotFoundError:
            ALLOCATION_COMMIT_TOTAL.labels(mode, "not_found").inc()
            logger.warning(
                "allocation_commit_not_found",
                resource_id=candidate.id,
                incident_id=incident_id,
            )
            return None

        ALLOCATION_COMMIT_TOTAL.labels(mode, "success").inc()
        try:
            entry = await self._ledger.open_entry(
                AssignmentCreateInput(
                    resource_id=record.id,
                    conversation_id=incident_id,
                    assigned_by=assigned_by,
                    notes=notes,
                )
            )
        except StoreUnavailableError as exc:
            # 资源已绑定，台账缺失；把它计入部分结果后再中断
            logger.error(
                "allocation_ledger_append_failed",
                resource_id=record.id,
                incident_id=incident_id,
                error=str(exc),
            )
            raise AllocationInterruptedError(
                str(exc),
                [AssignedResource.from_record(record, distance_km=distance)],
            ) from exc
        except ResourceNotFoundError:
            # 写台账前资源已被释放或改派，本次抢占作废
            ALLOCATION_COMMIT_TOTAL.labels(mode, "binding_lost").inc()
            logger.warning(
                "allocation_binding_lost",
                resource_id=record.id,
                incident_id=incident_id,
            )
            return None

        logger.info(
            "allocation_resource_assigned",
            resource_id=record.id,
            identifier=record.identifier,
            incident_id=incident_id,
            assignment_id=entry.id,
            distance_km=None if distance is None else round(distance, 3),
        )
        return AssignedResource.from_record(record, assignment_id=entry.id, distance_km=distance)

    async def _rollback(self, committed: Sequence[AssignedResource], incident_id: str) -> None:
        for item in reversed(committed):
            try:
                await self._store.release_from(item.id, incident_id)
                await self._ledger.close_entries(
                    item.id,
                    incident_id=incident_id,
                    status=AssignmentStatus.CANCELLED,
                )
            except (ResourceNotFoundError, StoreUnavailableError) as exc:
                logger.error(
                    "assign_resources_rollback_failed",
                    resource_id=item.id,
                    incident_id=incident_id,
                    error=str(exc),
                )
                continue
            logger.info("assign_resources_rolled_back", resource_id=item.id, incident_id=incident_id)


def _matches(resource: ResourceRecord, requirement: ResourceRequirement) -> bool:
    if requirement.category is not None and resource.category != requirement.category:
        return False
    if requirement.type_name:
        needle = requirement.type_name.lower()
        if needle not in resource.type_name.lower() and needle not in resource.name.lower():
            return False
    return True


def _rank_candidates(
    candidates: Iterable[ResourceRecord],
    incident_lat: float,
    incident_lng: float,
    max_distance_km: Optional[float],
) -> list[tuple[float, ResourceRecord]]:
    """按距离升序排序（稳定排序，距离相同保持先入顺序），并按最大距离截断。"""

    ranked = [
        (
            distance_km(incident_lat, incident_lng, float(item.latitude), float(item.longitude)),  # type: ignore[arg-type]
            item,
        )
        for item in candidates
        if item.has_coordinates
    ]
    ranked.sort(key=lambda pair: pair[0])
    if max_distance_km is not None:
        ranked = [pair for pair in ranked if pair[0] <= max_distance_km]
    return ranked
