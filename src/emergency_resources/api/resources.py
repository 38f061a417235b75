# Copyright 2025 msq
from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from emergency_resources.allocation import (
    AllocationEngine,
    AllocationInterruptedError,
    ReleaseCoordinator,
    ResourceRequirement,
)
from emergency_resources.db.dao import AssignmentRepository, ResourceDAO
from emergency_resources.db.errors import ResourceConflictError, ResourceNotFoundError, StoreUnavailableError
from emergency_resources.db.models import ResourceCategory, ResourceStatus

router = APIRouter(prefix="/resources", tags=["resources"])
logger = structlog.get_logger(__name__)


class AssignNearestRequest(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0, description="事件纬度")
    longitude: float = Field(..., ge=-180.0, le=180.0, description="事件经度")
    conversation_id: str = Field(..., min_length=1, description="事件/会话ID")
    requirements: List[ResourceRequirement] = Field(default_factory=list, description="需求清单，空则使用默认组合")
    assigned_by: str = Field("system", description="调派人")


class AssignByTypeRequest(BaseModel):
    resource_type: str = Field(..., min_length=1, description="类型名或资源名子串")
    count: int = Field(1, ge=1, le=100)
    conversation_id: str = Field(..., min_length=1)
    assigned_by: str = "system"
    notes: Optional[str] = None


class AssignResourcesRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    resource_ids: List[str] = Field(..., min_length=1)
    assigned_by: Optional[str] = None
    notes: Optional[str] = None


class ReleaseRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1)
    resource_ids: List[str] = Field(..., min_length=1)


class UpdateStatusRequest(BaseModel):
    status: ResourceStatus


class CommonEnvelope(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Any = None


def _require(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} 未初始化")
    return service


def _require_engine(request: Request) -> AllocationEngine:
    return _require(request, "allocation_engine")


def _require_release(request: Request) -> ReleaseCoordinator:
    return _require(request, "release_coordinator")


def _require_store(request: Request) -> ResourceDAO:
    return _require(request, "resource_store")


def _require_ledger(request: Request) -> AssignmentRepository:
    return _require(request, "assignment_ledger")


def _unavailable(exc: StoreUnavailableError, partial: Any = None) -> JSONResponse:
    logger.error("resources_api_store_unavailable", error=str(exc), partial=partial is not None)
    body: Dict[str, Any] = {"success": False, "error": "资源存储不可用，请稍后重试", "message": str(exc)}
    if partial is not None:
        body["data"] = partial
    return JSONResponse(status_code=503, content=body)


@router.get("", response_model=CommonEnvelope)
async def list_resources(
    category: Optional[ResourceCategory] = None,
    status: Optional[ResourceStatus] = None,
    available: bool = False,
    store: ResourceDAO = Depends(_require_store),
) -> Any:
    if available:
        status = ResourceStatus.AVAILABLE
    try:
        resources = await store.list_resources(status=status, category=category)
        stats = await store.summarize()
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(data={"resources": jsonable_encoder(resources), "stats": jsonable_encoder(stats)})


@router.post("/assign-nearest", response_model=CommonEnvelope)
async def assign_nearest(
    payload: AssignNearestRequest,
    engine: AllocationEngine = Depends(_require_engine),
) -> Any:
    try:
        result = await engine.assign_nearest(
            payload.latitude,
            payload.longitude,
            payload.conversation_id,
            payload.requirements,
            assigned_by=payload.assigned_by,
        )
    except AllocationInterruptedError as exc:
        return _unavailable(exc, _dump(exc.partial_result))
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    data = result.model_dump(mode="json")
    data["summary"] = {
        "assigned": len(result.assigned_resources),
        "failed": len(result.unavailable_requirements),
        "average_distance": round(result.average_distance, 2),
    }
    if not result.success:
        # 无可用资源是正常业务结果，与存储故障（503）区分
        return JSONResponse(
            status_code=404,
            content={"success": False, "message": "Failed to assign any resources", "data": data},
        )
    return CommonEnvelope(message=f"Assigned {len(result.assigned_resources)} nearest resources", data=data)


@router.post("/assign-by-type", response_model=CommonEnvelope)
async def assign_by_type(
    payload: AssignByTypeRequest,
    engine: AllocationEngine = Depends(_require_engine),
) -> Any:
    try:
        assigned = await engine.assign_by_type(
            payload.resource_type,
            payload.count,
            payload.conversation_id,
            assigned_by=payload.assigned_by,
            notes=payload.notes,
        )
    except AllocationInterruptedError as exc:
        return _unavailable(exc, _dump(exc.partial_result))
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(
        success=bool(assigned),
        message=f"Assigned {len(assigned)}/{payload.count} {payload.resource_type} resources",
        data={
            "assigned_resources": [item.model_dump(mode="json") for item in assigned],
            "requested": payload.count,
        },
    )


@router.post("/assign", response_model=CommonEnvelope)
async def assign_resources(
    payload: AssignResourcesRequest,
    engine: AllocationEngine = Depends(_require_engine),
) -> Any:
    try:
        result = await engine.assign_resources(
            payload.resource_ids,
            payload.conversation_id,
            assigned_by=payload.assigned_by,
            notes=payload.notes,
        )
    except AllocationInterruptedError as exc:
        return _unavailable(exc, _dump(exc.partial_result))
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    if not result.success:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "message": "Some resources are not available",
                "data": result.model_dump(mode="json"),
            },
        )
    return CommonEnvelope(
        message=f"Assigned {len(result.assigned_resources)} resources",
        data=result.model_dump(mode="json"),
    )


@router.post("/release", response_model=CommonEnvelope)
async def release_resources(
    payload: ReleaseRequest,
    coordinator: ReleaseCoordinator = Depends(_require_release),
) -> Any:
    try:
        result = await coordinator.release(payload.resource_ids, payload.conversation_id)
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(
        message=f"Successfully released {result.released_count} resources",
        data=result.model_dump(mode="json"),
    )


@router.post("/incidents/{conversation_id}/release", response_model=CommonEnvelope)
async def release_incident(
    conversation_id: str,
    coordinator: ReleaseCoordinator = Depends(_require_release),
) -> Any:
    try:
        result = await coordinator.release_all_for_incident(conversation_id)
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(
        message=f"Successfully released {result.released_count} resources",
        data=result.model_dump(mode="json"),
    )


@router.put("/{resource_id}/status", response_model=CommonEnvelope)
async def update_resource_status(
    resource_id: str,
    payload: UpdateStatusRequest,
    store: ResourceDAO = Depends(_require_store),
) -> Any:
    try:
        record = await store.update_status(resource_id, payload.status)
    except ResourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ResourceConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(data=jsonable_encoder(record))


@router.get("/{resource_id}/assignments", response_model=CommonEnvelope)
async def list_resource_assignments(
    resource_id: str,
    limit: int = Query(20, ge=1, le=200),
    ledger: AssignmentRepository = Depends(_require_ledger),
) -> Any:
    """资源调派历史，按调派时间倒序。"""
    try:
        entries = await ledger.list_for_resource(resource_id, limit=limit)
    except StoreUnavailableError as exc:
        return _unavailable(exc)
    return CommonEnvelope(data={"resource_id": resource_id, "assignments": jsonable_encoder(entries)})


def _dump(partial: Any) -> Any:
    if isinstance(partial, list):
        return [item.model_dump(mode="json") for item in partial]
    return partial.model_dump(mode="json")
