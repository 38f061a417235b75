# Copyright 2025 msq
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from emergency_resources.db.dao import ResourceCatalogRepository
from emergency_resources.db.models import (
    ResourceCategory,
    ResourceCreateInput,
    ResourceTypeCreateInput,
)

logger = structlog.get_logger(__name__)


RESOURCE_TYPES: tuple[ResourceTypeCreateInput, ...] = (
    ResourceTypeCreateInput("Emergency Medical Technician", ResourceCategory.PERSONNEL, "Certified EMT for medical emergencies"),
    ResourceTypeCreateInput("Rescue Specialist", ResourceCategory.PERSONNEL, "Trained rescue operations specialist"),
    ResourceTypeCreateInput("Disaster Coordinator", ResourceCategory.PERSONNEL, "Emergency response coordinator"),
    ResourceTypeCreateInput("Ambulance", ResourceCategory.VEHICLE, "Emergency medical transport vehicle"),
    ResourceTypeCreateInput("Fire Truck", ResourceCategory.VEHICLE, "Fire and rescue vehicle"),
    ResourceTypeCreateInput("Search & Rescue Vehicle", ResourceCategory.VEHICLE, "All-terrain rescue vehicle"),
    ResourceTypeCreateInput("Medical Kit", ResourceCategory.EQUIPMENT, "Portable emergency medical supplies"),
    ResourceTypeCreateInput("Rescue Equipment", ResourceCategory.EQUIPMENT, "Ropes, tools, and rescue gear"),
    ResourceTypeCreateInput("Emergency Food Package", ResourceCategory.SUPPLY, "Ready-to-eat emergency food for 10 people"),
    ResourceTypeCreateInput("Water Purification Kit", ResourceCategory.SUPPLY, "Portable water treatment system"),
    ResourceTypeCreateInput("Emergency Shelter", ResourceCategory.FACILITY, "Temporary shelter facility"),
    ResourceTypeCreateInput("Medical Station", ResourceCategory.FACILITY, "Mobile medical treatment facility"),
)


@dataclass(frozen=True)
class _SeedResource:
    identifier: str
    type_name: str
    capacity: int
    location: str
    lat: Optional[float] = None
    lng: Optional[float] = None


# 演练区域中心 (22.253, 84.908) 周边的资源部署
RESOURCES: tuple[_SeedResource, ...] = (
    _SeedResource("EMT-001", "Emergency Medical Technician", 1, "Station 1", 22.270, 84.900),
    _SeedResource("EMT-002", "Emergency Medical Technician", 1, "Station 2", 22.250, 84.920),
    _SeedResource("EMT-003", "Emergency Medical Technician", 1, "Station 3", 22.260, 84.910),
    _SeedResource("RESCUE-01", "Rescue Specialist", 1, "Rescue Station 1", 22.280, 84.890),
    _SeedResource("RESCUE-02", "Rescue Specialist", 1, "Rescue Station 2", 22.240, 84.930),
    _SeedResource("COORD-01", "Disaster Coordinator", 1, "Command Center 1", 22.260, 84.910),
    _SeedResource("COORD-02", "Disaster Coordinator", 1, "Command Center 2", 22.255, 84.915),
    _SeedResource("AMB-001", "Ambulance", 4, "Medical Station 1", 22.270, 84.900),
    _SeedResource("AMB-002", "Ambulance", 4, "Medical Station 2", 22.250, 84.920),
    _SeedResource("FIRE-001", "Fire Truck", 6, "Fire Station Alpha", 22.260, 84.910),
    _SeedResource("SAR-001", "Search & Rescue Vehicle", 4, "SAR Base 1", 22.290, 84.880),
    _SeedResource("SAR-002", "Search & Rescue Vehicle", 4, "SAR Base 2", 22.230, 84.930),
    _SeedResource("MEDKIT-001", "Medical Kit", 10, "Medical Storage 1", 22.280, 84.910),
    _SeedResource("MEDKIT-002", "Medical Kit", 10, "Medical Storage 1", 22.280, 84.910),
    _SeedResource("MEDKIT-003", "Medical Kit", 10, "Medical Storage 1", 22.280, 84.910),
    _SeedResource("MEDKIT-004", "Medical Kit", 10, "Medical Storage 2", 22.240, 84.910),
    _SeedResource("MEDKIT-005", "Medical Kit", 10, "Medical Storage 2", 22.240, 84.910),
    _SeedResource("RESCUE-KIT-01", "Rescue Equipment", 1, "Equipment Storage 1", 22.260, 84.920),
    _SeedResource("RESCUE-KIT-02", "Rescue Equipment", 1, "Equipment Storage 2", 22.260, 84.900),
    _SeedResource("RESCUE-KIT-03", "Rescue Equipment", 1, "Equipment Storage 3", 22.260, 84.910),
    _SeedResource("FOOD-001", "Emergency Food Package", 10, "Supply Depot 1", 22.250, 84.890),
    _SeedResource("FOOD-002", "Emergency Food Package", 10, "Supply Depot 1", 22.250, 84.890),
    _SeedResource("FOOD-003", "Emergency Food Package", 10, "Supply Depot 1", 22.250, 84.890),
    _SeedResource("FOOD-004", "Emergency Food Package", 10, "Supply Depot 1", 22.250, 84.890),
    _SeedResource("FOOD-005", "Emergency Food Package", 10, "Supply Depot 1", 22.275, 84.920),
    _SeedResource("FOOD-006", "Emergency Food Package", 10, "Supply Depot 2", 22.275, 84.920),
    _SeedResource("FOOD-007", "Emergency Food Package", 10, "Supply Depot 2", 22.275, 84.920),
    _SeedResource("FOOD-008", "Emergency Food Package", 10, "Supply Depot 2", 22.275, 84.920),
    _SeedResource("FOOD-009", "Emergency Food Package", 10, "Supply Depot 2", 22.260, 84.880),
    _SeedResource("FOOD-010", "Emergency Food Package", 10, "Supply Depot 2", 22.260, 84.880),
    _SeedResource("WATER-001", "Water Purification Kit", 100, "Water Station 1", 22.285, 84.905),
    _SeedResource("WATER-002", "Water Purification Kit", 100, "Water Station 2", 22.235, 84.915),
    _SeedResource("WATER-003", "Water Purification Kit", 100, "Water Station 3", 22.265, 84.935),
    _SeedResource("WATER-004", "Water Purification Kit", 100, "Water Station 4", 22.245, 84.885),
    _SeedResource("WATER-005", "Water Purification Kit", 100, "Water Station 5", 22.270, 84.895),
    _SeedResource("SHELTER-01", "Emergency Shelter", 50, "Shelter Site 1", 22.270, 84.900),
    _SeedResource("SHELTER-02", "Emergency Shelter", 50, "Shelter Site 2", 22.240, 84.920),
    _SeedResource("SHELTER-03", "Emergency Shelter", 50, "Shelter Site 3", 22.280, 84.930),
    _SeedResource("MEDSTATION-01", "Medical Station", 20, "Medical Facility 1", 22.275, 84.910),
    _SeedResource("MEDSTATION-02", "Medical Station", 20, "Medical Facility 2", 22.245, 84.910),
)


async def seed_catalog(repository: ResourceCatalogRepository, *, reset: bool = False) -> dict[str, int]:
    """写入资源类型与资源实例，按声明顺序插入以保持先入先派顺序。

    已存在数据时必须显式 reset（清空台账、资源与类型后重建）。
    """

    existing = await repository.list_types()
    if existing and not reset:
        raise RuntimeError(f"已存在 {len(existing)} 个资源类型，重新初始化需指定 reset")
    if existing:
        logger.warning("catalog_reset", existing_types=len(existing))
        await repository.clear_all()
    for resource_type in RESOURCE_TYPES:
        await repository.create_type(resource_type)
    created = 0
    for item in RESOURCES:
        await repository.create_resource(
            ResourceCreateInput(
                identifier=item.identifier,
                name=item.identifier,
                type_name=item.type_name,
                capacity=item.capacity,
                location=item.location,
                latitude=item.lat,
                longitude=item.lng,
            )
        )
        created += 1

    by_category: dict[str, int] = {}
    type_category = {entry.name: entry.category.value for entry in RESOURCE_TYPES}
    for item in RESOURCES:
        key = type_category[item.type_name]
        by_category[key] = by_category.get(key, 0) + 1
    logger.info("catalog_seeded", types=len(RESOURCE_TYPES), resources=created, by_category=by_category)
    return {"types": len(RESOURCE_TYPES), "resources": created}
