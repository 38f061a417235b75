from __future__ import annotations

import asyncio
import math

import pytest

from emergency_resources.allocation import (
    AllocationEngine,
    AllocationInterruptedError,
    NearestAssignmentResult,
    ResourceRequirement,
)
from emergency_resources.db.errors import ResourceConflictError
from emergency_resources.db.models import AssignmentStatus, ResourceCategory, ResourceStatus
from emergency_resources.geo import distance_km

INCIDENT_LAT = 22.253
INCIDENT_LNG = 84.908
KM_PER_DEGREE = math.pi * 6371.0 / 180.0


def _north(km: float) -> dict[str, float]:
    return {"lat": INCIDENT_LAT + km / KM_PER_DEGREE, "lng": INCIDENT_LNG}


def _ambulance(count: int = 1, max_km: float | None = 15) -> ResourceRequirement:
    return ResourceRequirement(
        category=ResourceCategory.VEHICLE,
        type_name="Ambulance",
        count=count,
        max_distance_km=max_km,
    )


# ---------------------------------------------------------------------------
# assign_by_type
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_by_type_takes_oldest_first(store, ledger, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    second = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE)
    third = store.add("AMB-003", "Ambulance", ResourceCategory.VEHICLE)

    assigned = await engine.assign_by_type("Ambulance", 2, "incident-1")

    assert [item.id for item in assigned] == [first.id, second.id]
    assert store.get(third.id).status is ResourceStatus.AVAILABLE
    assert all(item.conversation_id == "incident-1" for item in assigned)
    assert [entry.resource_id for entry in ledger.entries] == [first.id, second.id]
    assert all(item.assignment_id for item in assigned)


@pytest.mark.asyncio
async def test_by_type_matches_resource_name_case_insensitive(store, engine: AllocationEngine) -> None:
    store.add("MEDKIT-001", "Medical Kit", ResourceCategory.EQUIPMENT)
    store.add("FIRE-001", "Fire Truck", ResourceCategory.VEHICLE)

    by_type = await engine.assign_by_type("medical", 5, "incident-1")
    by_name = await engine.assign_by_type("fire-0", 1, "incident-1")

    assert [item.identifier for item in by_type] == ["MEDKIT-001"]
    assert [item.identifier for item in by_name] == ["FIRE-001"]


@pytest.mark.asyncio
async def test_by_type_without_candidates_returns_empty(store, ledger, engine: AllocationEngine) -> None:
    store.add("FIRE-001", "Fire Truck", ResourceCategory.VEHICLE)

    assigned = await engine.assign_by_type("Helicopter", 2, "incident-1")

    assert assigned == []
    assert ledger.entries == []


@pytest.mark.asyncio
async def test_by_type_non_positive_count(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)

    assert await engine.assign_by_type("Ambulance", 0, "incident-1") == []
    assert store.commit_calls == []


@pytest.mark.asyncio
async def test_by_type_skips_lost_race(store, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    second = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE)
    store.steal_on_commit[first.id] = "incident-other"

    assigned = await engine.assign_by_type("Ambulance", 2, "incident-1")

    assert [item.id for item in assigned] == [second.id]
    assert store.get(first.id).assigned_to_conversation_id == "incident-other"


@pytest.mark.asyncio
async def test_by_type_outage_keeps_committed_part(store, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    second = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE)
    store.fail_commit_after = 1

    with pytest.raises(AllocationInterruptedError) as info:
        await engine.assign_by_type("Ambulance", 2, "incident-1")

    partial = info.value.partial_result
    assert [item.id for item in partial] == [first.id]
    assert store.get(first.id).status is ResourceStatus.ASSIGNED
    assert store.get(second.id).status is ResourceStatus.AVAILABLE


@pytest.mark.asyncio
async def test_by_type_sleeps_between_commits(store, ledger, monkeypatch) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE)
    store.add("AMB-003", "Ambulance", ResourceCategory.VEHICLE)
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def _record_sleep(seconds: float, *args, **kwargs):
        if seconds:
            delays.append(seconds)
        return await real_sleep(0)

    monkeypatch.setattr("emergency_resources.allocation.engine.asyncio.sleep", _record_sleep)
    engine = AllocationEngine(store=store, ledger=ledger, commit_delay_seconds=0.1)

    assigned = await engine.assign_by_type("Ambulance", 3, "incident-1")

    assert len(assigned) == 3
    assert delays == [0.1, 0.1]


# ---------------------------------------------------------------------------
# assign_nearest
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_nearest_picks_closest_ambulance(store, ledger, engine: AllocationEngine) -> None:
    far = store.add("AMB-FAR", "Ambulance", ResourceCategory.VEHICLE, **_north(22.0))
    near = store.add("AMB-NEAR", "Ambulance", ResourceCategory.VEHICLE, **_north(3.0))

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert result.success is True
    assert [item.id for item in result.assigned_resources] == [near.id]
    assert result.total_distance == pytest.approx(3.0, abs=1e-6)
    assert result.unavailable_requirements == []
    assert store.get(far.id).status is ResourceStatus.AVAILABLE
    assert ledger.open_for(near.id)[0].conversation_id == "incident-1"


@pytest.mark.asyncio
async def test_nearest_respects_max_distance(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(9.0))
    store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, **_north(12.0))
    store.add("AMB-003", "Ambulance", ResourceCategory.VEHICLE, **_north(4.0))

    result = await engine.assign_nearest(
        INCIDENT_LAT,
        INCIDENT_LNG,
        "incident-1",
        [_ambulance(count=3, max_km=10)],
    )

    assert [item.identifier for item in result.assigned_resources] == ["AMB-003", "AMB-001"]
    for item in result.assigned_resources:
        assert distance_km(INCIDENT_LAT, INCIDENT_LNG, item.latitude, item.longitude) <= 10
    assert result.unavailable_requirements == ["VEHICLE Ambulance (3 needed, 2 available)"]


@pytest.mark.asyncio
async def test_nearest_reports_partial_fulfilment(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(2.0))

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance(count=3)])

    assert result.success is True
    assert len(result.assigned_resources) == 1
    assert len(result.unavailable_requirements) == 1
    assert "(3 needed, 1 available)" in result.unavailable_requirements[0]


@pytest.mark.asyncio
async def test_nearest_no_capacity_is_not_an_error(store, engine: AllocationEngine) -> None:
    store.add("FIRE-001", "Fire Truck", ResourceCategory.VEHICLE, **_north(1.0))

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert result.success is False
    assert result.assigned_resources == []
    assert result.total_distance == 0.0
    assert result.unavailable_requirements == ["VEHICLE Ambulance (1 needed, 0 available)"]


@pytest.mark.asyncio
async def test_nearest_never_claims_resource_twice(store, engine: AllocationEngine) -> None:
    only = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    requirements = [
        ResourceRequirement(category=ResourceCategory.VEHICLE, count=1),
        ResourceRequirement(type_name="ambulance", count=1),
    ]

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", requirements)

    assert [item.id for item in result.assigned_resources] == [only.id]
    assert result.unavailable_requirements == ["ANY ambulance (1 needed, 0 available)"]
    assert [call[0] for call in store.commit_calls] == [only.id]


@pytest.mark.asyncio
async def test_nearest_falls_back_after_conflict(store, engine: AllocationEngine) -> None:
    near = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    backup = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, **_north(5.0))
    store.steal_on_commit[near.id] = "incident-other"

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert [item.id for item in result.assigned_resources] == [backup.id]
    assert result.unavailable_requirements == []


@pytest.mark.asyncio
async def test_nearest_shortfall_counts_committed_after_lost_race(store, engine: AllocationEngine) -> None:
    near = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    backup = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, **_north(5.0))
    store.steal_on_commit[near.id] = "incident-other"

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance(count=2)])

    assert [item.id for item in result.assigned_resources] == [backup.id]
    assert result.unavailable_requirements == ["VEHICLE Ambulance (2 needed, 1 available)"]
    assert [call[0] for call in store.commit_calls] == [near.id, backup.id]


@pytest.mark.asyncio
async def test_out_of_service_and_maintenance_are_never_assigned(store, ledger, engine: AllocationEngine) -> None:
    # 最近的两辆救护车处于维护/停用，应选择下一辆可用的
    maintenance = store.add(
        "AMB-MAINT", "Ambulance", ResourceCategory.VEHICLE, status=ResourceStatus.MAINTENANCE, **_north(0.5)
    )
    retired = store.add(
        "AMB-OOS", "Ambulance", ResourceCategory.VEHICLE, status=ResourceStatus.OUT_OF_SERVICE, **_north(1.0)
    )
    eligible = store.add("AMB-003", "Ambulance", ResourceCategory.VEHICLE, **_north(6.0))
    spare = store.add("AMB-004", "Ambulance", ResourceCategory.VEHICLE, **_north(8.0))

    nearest = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])
    by_type = await engine.assign_by_type("Ambulance", 1, "incident-2")

    assert [item.id for item in nearest.assigned_resources] == [eligible.id]
    assert nearest.total_distance == pytest.approx(6.0, abs=1e-6)
    assert [item.id for item in by_type] == [spare.id]
    assert store.get(maintenance.id).status is ResourceStatus.MAINTENANCE
    assert store.get(retired.id).status is ResourceStatus.OUT_OF_SERVICE
    assert store.get(maintenance.id).assigned_to_conversation_id is None
    assert store.get(retired.id).assigned_to_conversation_id is None
    assert {call[0] for call in store.commit_calls} == {eligible.id, spare.id}
    assert ledger.open_for(maintenance.id) == []
    assert ledger.open_for(retired.id) == []


@pytest.mark.asyncio
async def test_nearest_skips_resource_released_before_ledger_write(store, ledger, engine: AllocationEngine) -> None:
    near = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    backup = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, **_north(5.0))
    ledger.release_before_open.add(near.id)

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert [item.id for item in result.assigned_resources] == [backup.id]
    assert result.unavailable_requirements == []
    assert ledger.open_for(near.id) == []
    assert store.get(near.id).status is ResourceStatus.AVAILABLE


@pytest.mark.asyncio
async def test_nearest_ignores_resources_without_coordinates(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert result.success is False


@pytest.mark.asyncio
async def test_nearest_uses_default_bundle(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(3.0))
    store.add("EMT-001", "Emergency Medical Technician", ResourceCategory.PERSONNEL, **_north(4.0))
    store.add("MEDKIT-001", "Medical Kit", ResourceCategory.EQUIPMENT, **_north(30.0))

    result = await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1")

    assert [item.identifier for item in result.assigned_resources] == ["AMB-001", "EMT-001"]
    assert result.unavailable_requirements == ["EQUIPMENT Medical (1 needed, 0 available)"]
    assert result.average_distance == pytest.approx(3.5, abs=1e-6)


@pytest.mark.asyncio
async def test_nearest_rejects_invalid_coordinates(engine: AllocationEngine) -> None:
    with pytest.raises(ValueError):
        await engine.assign_nearest(123.0, INCIDENT_LNG, "incident-1", [_ambulance()])


@pytest.mark.asyncio
async def test_nearest_outage_returns_partial_result(store, engine: AllocationEngine) -> None:
    store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, **_north(2.0))
    store.fail_commit_after = 1

    with pytest.raises(AllocationInterruptedError) as info:
        await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance(count=2)])

    partial = info.value.partial_result
    assert isinstance(partial, NearestAssignmentResult)
    assert [item.identifier for item in partial.assigned_resources] == ["AMB-001"]
    assert partial.success is True


@pytest.mark.asyncio
async def test_nearest_list_outage_raises(store, engine: AllocationEngine) -> None:
    store.fail_list = True

    with pytest.raises(AllocationInterruptedError) as info:
        await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    assert info.value.partial_result.assigned_resources == []


@pytest.mark.asyncio
async def test_ledger_failure_reports_bound_resource(store, ledger, engine: AllocationEngine) -> None:
    only = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0))
    ledger.fail_open = True

    with pytest.raises(AllocationInterruptedError) as info:
        await engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, "incident-1", [_ambulance()])

    partial = info.value.partial_result
    assert [item.id for item in partial.assigned_resources] == [only.id]
    assert partial.assigned_resources[0].assignment_id is None


# ---------------------------------------------------------------------------
# assign_resources / 并发
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_explicit_assignment_all_or_nothing(store, ledger, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    taken = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE, status=ResourceStatus.ASSIGNED, incident="x")

    result = await engine.assign_resources([first.id, taken.id], "incident-1")

    assert result.success is False
    assert result.unavailable_resource_ids == [taken.id]
    assert store.get(first.id).status is ResourceStatus.AVAILABLE
    assert [entry.status for entry in ledger.entries] == [AssignmentStatus.CANCELLED]


@pytest.mark.asyncio
async def test_explicit_assignment_success(store, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    second = store.add("FIRE-001", "Fire Truck", ResourceCategory.VEHICLE)

    result = await engine.assign_resources([first.id, second.id, first.id], "incident-1", assigned_by="commander")

    assert result.success is True
    assert [item.id for item in result.assigned_resources] == [first.id, second.id]


@pytest.mark.asyncio
async def test_explicit_assignment_rolls_back_when_binding_lost(store, ledger, engine: AllocationEngine) -> None:
    first = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)
    second = store.add("AMB-002", "Ambulance", ResourceCategory.VEHICLE)
    ledger.release_before_open.add(second.id)

    result = await engine.assign_resources([first.id, second.id], "incident-1")

    assert result.success is False
    assert result.unavailable_resource_ids == [second.id]
    assert store.get(first.id).status is ResourceStatus.AVAILABLE
    assert [(entry.resource_id, entry.status) for entry in ledger.entries] == [
        (first.id, AssignmentStatus.CANCELLED)
    ]


@pytest.mark.asyncio
async def test_concurrent_commits_only_one_wins(store) -> None:
    resource = store.add("AMB-001", "Ambulance", ResourceCategory.VEHICLE)

    outcomes = await asyncio.gather(
        *(store.commit(resource.id, f"incident-{index}") for index in range(8)),
        return_exceptions=True,
    )

    winners = [item for item in outcomes if not isinstance(item, BaseException)]
    conflicts = [item for item in outcomes if isinstance(item, ResourceConflictError)]
    assert len(winners) == 1
    assert len(conflicts) == 7


@pytest.mark.asyncio
async def test_concurrent_incidents_never_share_resource(store, ledger, engine: AllocationEngine) -> None:
    for index in range(3):
        store.add(f"AMB-00{index}", "Ambulance", ResourceCategory.VEHICLE, **_north(1.0 + index))

    results = await asyncio.gather(
        *(
            engine.assign_nearest(INCIDENT_LAT, INCIDENT_LNG, f"incident-{index}", [_ambulance()])
            for index in range(5)
        )
    )

    claimed = [item.id for result in results for item in result.assigned_resources]
    assert len(claimed) == 3
    assert len(set(claimed)) == 3
    assert sum(1 for result in results if not result.success) == 2
    for resource_id in claimed:
        assert len(ledger.open_for(resource_id)) == 1
