from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, PositiveInt, field_validator

from emergency_resources.db.models import ResourceCategory, ResourceRecord, ResourceStatus


class ResourceRequirement(BaseModel):
    """单条资源需求：大类/类型名/数量/最大距离。"""

    category: Optional[ResourceCategory] = None
    type_name: Optional[str] = Field(None, description="类型名或资源名子串，大小写不敏感")
    count: PositiveInt = 1
    max_distance_km: Optional[float] = Field(None, gt=0)

    @field_validator("type_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def describe_shortfall(self, available: int) -> str:
        category = self.category.value if self.category else "ANY"
        type_name = self.type_name or "ANY"
        return f"{category} {type_name} ({self.count} needed, {available} available)"


# 未给出需求时的默认调派组合：救护车 + 医护人员 + 医疗装备
DEFAULT_REQUIREMENTS: tuple[ResourceRequirement, ...] = (
    ResourceRequirement(category=ResourceCategory.VEHICLE, type_name="Ambulance", count=1, max_distance_km=15),
    ResourceRequirement(category=ResourceCategory.PERSONNEL, type_name="Medical", count=1, max_distance_km=20),
    ResourceRequirement(category=ResourceCategory.EQUIPMENT, type_name="Medical", count=1, max_distance_km=25),
)


class AssignedResource(BaseModel):
    """成功调派的资源摘要。"""

    id: str
    identifier: str
    name: str
    category: ResourceCategory
    type_name: str
    status: ResourceStatus
    capacity: int
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    conversation_id: str
    assigned_at: Optional[datetime] = None
    assignment_id: Optional[str] = Field(None, description="台账条目ID，写台账失败时为空")
    distance_km: Optional[float] = None

    @classmethod
    def from_record(
        cls,
        record: ResourceRecord,
        *,
        assignment_id: Optional[str] = None,
        distance_km: Optional[float] = None,
    ) -> "AssignedResource":
        return cls(
            id=record.id,
            identifier=record.identifier,
            name=record.name,
            category=record.category,
            type_name=record.type_name,
            status=record.status,
            capacity=record.capacity,
            location=record.location,
            latitude=record.latitude,
            longitude=record.longitude,
            conversation_id=record.assigned_to_conversation_id or "",
            assigned_at=record.assigned_at,
            assignment_id=assignment_id,
            distance_km=distance_km,
        )


class NearestAssignmentResult(BaseModel):
    success: bool = False
    assigned_resources: List[AssignedResource] = Field(default_factory=list)
    unavailable_requirements: List[str] = Field(default_factory=list)
    total_distance: float = 0.0

    @property
    def average_distance(self) -> float:
        if not self.assigned_resources:
            return 0.0
        return self.total_distance / len(self.assigned_resources)


class ExplicitAssignmentResult(BaseModel):
    """按资源ID手动调派的结果（全部成功或全部回滚）。"""

    success: bool = False
    assigned_resources: List[AssignedResource] = Field(default_factory=list)
    unavailable_resource_ids: List[str] = Field(default_factory=list)


class ReleaseResult(BaseModel):
    released_count: int = 0
    released: List[str] = Field(default_factory=list)
    not_found: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    completed_entries: int = 0
