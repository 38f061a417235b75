from emergency_resources.allocation.engine import AllocationEngine, AllocationInterruptedError
from emergency_resources.allocation.models import (
    DEFAULT_REQUIREMENTS,
    AssignedResource,
    ExplicitAssignmentResult,
    NearestAssignmentResult,
    ReleaseResult,
    ResourceRequirement,
)
from emergency_resources.allocation.release import ReleaseCoordinator

__all__ = [
    "AllocationEngine",
    "AllocationInterruptedError",
    "AssignedResource",
    "DEFAULT_REQUIREMENTS",
    "ExplicitAssignmentResult",
    "NearestAssignmentResult",
    "ReleaseCoordinator",
    "ReleaseResult",
    "ResourceRequirement",
]
