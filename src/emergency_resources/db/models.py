from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from typing_extensions import TypedDict


class ResourceCategory(str, Enum):
    """资源大类。"""

    PERSONNEL = "PERSONNEL"
    VEHICLE = "VEHICLE"
    EQUIPMENT = "EQUIPMENT"
    FACILITY = "FACILITY"
    SUPPLY = "SUPPLY"


class ResourceStatus(str, Enum):
    """资源实例的当前状态。"""

    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    IN_USE = "IN_USE"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


# ASSIGNED / IN_USE 必须与事件绑定同时存在
BOUND_STATUSES: frozenset[ResourceStatus] = frozenset({ResourceStatus.ASSIGNED, ResourceStatus.IN_USE})


class AssignmentStatus(str, Enum):
    """调派台账条目的生命周期状态。"""

    ASSIGNED = "ASSIGNED"
    DEPLOYED = "DEPLOYED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


OPEN_ASSIGNMENT_STATUSES: tuple[AssignmentStatus, ...] = (
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.DEPLOYED,
    AssignmentStatus.ACTIVE,
)


class ResourceFilter(TypedDict, total=False):
    """可用资源查询条件。"""

    category: ResourceCategory
    type_name_contains: str
    has_coordinates: bool


@dataclass(slots=True)
class ResourceTypeRecord:
    """资源类型（静态参考数据）。"""

    id: str
    name: str
    category: ResourceCategory
    description: Optional[str]

    def __post_init__(self) -> None:
        self.category = ResourceCategory(self.category)


@dataclass(slots=True)
class ResourceRecord:
    """资源实例及其当前绑定状态。"""

    id: str
    identifier: str
    name: str
    type_name: str
    category: ResourceCategory
    status: ResourceStatus
    capacity: int
    location: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    assigned_to_conversation_id: Optional[str]
    assigned_at: Optional[datetime]
    created_at: datetime

    def __post_init__(self) -> None:
        self.category = ResourceCategory(self.category)
        self.status = ResourceStatus(self.status)
        if self.latitude is not None:
            self.latitude = float(self.latitude)
        if self.longitude is not None:
            self.longitude = float(self.longitude)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(slots=True)
class ResourceTypeCreateInput:
    name: str
    category: ResourceCategory
    description: Optional[str] = None


@dataclass(slots=True)
class ResourceCreateInput:
    """新建资源实例的写入参数，type_name 指向已存在的资源类型。"""

    identifier: str
    name: str
    type_name: str
    capacity: int = 1
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(slots=True)
class AssignmentRecord:
    """调派台账条目。"""

    id: str
    resource_id: str
    conversation_id: str
    assigned_by: Optional[str]
    status: AssignmentStatus
    notes: Optional[str]
    assigned_at: datetime
    completed_at: Optional[datetime]

    def __post_init__(self) -> None:
        self.status = AssignmentStatus(self.status)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ASSIGNMENT_STATUSES


@dataclass(slots=True)
class AssignmentCreateInput:
    resource_id: str
    conversation_id: str
    assigned_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass(slots=True)
class CategoryStats:
    total: int = 0
    available: int = 0
    assigned: int = 0
    in_use: int = 0


@dataclass(slots=True)
class ResourceStats:
    """资源总览统计（按状态与大类）。"""

    total: int = 0
    available: int = 0
    assigned: int = 0
    in_use: int = 0
    maintenance: int = 0
    out_of_service: int = 0
    by_category: dict[str, CategoryStats] = field(default_factory=dict)
