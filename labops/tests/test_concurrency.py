"""
Optimistic concurrency tests.

Validates that stale writers are rejected instead of overwriting newer state.
"""

from datetime import datetime, timedelta, timezone

import pytest

from labops.app.core.concurrency import ConcurrencyGuard
from labops.app.core.exceptions import ErrorKind, GovernanceException
from labops.app.models.logistics_enums import PickupRequestStatus, StopStatus
from labops.app.repositories.logistics import LogisticsRepository
from labops.app.schemas.case import CaseUpdate
from labops.app.schemas.logistics import PickupRequestDraft
from labops.app.services.audit import AuditAction


@pytest.fixture
async def case_id(db_session, lab_a):
    case = await LogisticsRepository(db_session).create_case(lab_a, clinic_id="clinic-1", case_number="C-2001")
    await db_session.commit()
    return case.id


@pytest.mark.asyncio
async def test_case_update_increments_version_by_one(service, lab_a, case_id):
    result = await service.update_case(lab_a, case_id, CaseUpdate(expected_version=0, status="InProduction"))

    assert result.ok
    assert result.value.version == 1
    assert result.value.status == "InProduction"
    assert result.value.updated_by == lab_a.user_id

    history = await service.audit.get_entity_history(lab_a, "case", case_id)
    assert history[0].action == AuditAction.CASE_UPDATED
    assert history[0].metadata == {"previous_version": 0, "new_version": 1, "changed_fields": ["status"]}
    assert (history[0].previous_status, history[0].new_status) == ("Received", "InProduction")


@pytest.mark.asyncio
async def test_stale_case_update_is_rejected(service, lab_a, case_id):
    """Read at version 3, another actor moves it to 4, then the stale update arrives."""
    for version in range(3):
        assert (await service.update_case(lab_a, case_id, CaseUpdate(expected_version=version, patient_name=f"P{version}"))).ok

    other_actor = lab_a.with_correlation("other-actor")
    assert (await service.update_case(other_actor, case_id, CaseUpdate(expected_version=3, status="Shipped"))).value.version == 4

    result = await service.update_case(lab_a, case_id, CaseUpdate(expected_version=3, status="Cancelled"))

    assert not result.ok
    assert result.error.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert (result.error.entity_id, result.error.expected_version, result.error.actual_version) == (case_id, 3, 4)

    case = await LogisticsRepository(service.db).get_case(lab_a, case_id)
    assert (case.version, case.status) == (4, "Shipped")

    conflicts = await service.audit.query(lab_a)
    assert conflicts[0].action == AuditAction.CONCURRENCY_CONFLICT
    assert conflicts[0].metadata["expected_version"] == 3
    assert conflicts[0].metadata["actual_version"] == 4


@pytest.mark.asyncio
async def test_conditional_update_catches_a_lost_race(db_session, lab_a, case_id):
    """The SQL guard still rejects when the in-memory check was passed earlier."""
    repository = LogisticsRepository(db_session)
    assert (await repository.update_case(lab_a, case_id, 0, {"status": "InProduction"})).value == 1

    result = await repository.update_case(lab_a, case_id, 0, {"status": "Cancelled"})

    assert result.error.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert result.error.actual_version == 1


@pytest.mark.asyncio
async def test_conditional_update_does_not_cross_labs(db_session, lab_a, lab_b, case_id):
    result = await LogisticsRepository(db_session).update_case(lab_b, case_id, 0, {"status": "Cancelled"})

    assert result.error.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_stop_change_with_stale_route_version(service, lab_a, delivery_route):
    first, second = delivery_route["stop_ids"]
    skipped = await service.transition_stop(lab_a, first, StopStatus.SKIPPED, 0, {"skipReason": "Clinic closed"})
    assert skipped.ok

    # The route moved to version 1 with the first stop change
    result = await service.transition_stop(lab_a, second, StopStatus.SKIPPED, 0, {"skipReason": "Clinic closed"})

    assert result.error.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert result.error.entity_type == "route"
    assert (result.error.expected_version, result.error.actual_version) == (0, 1)

    stop = await LogisticsRepository(service.db).get_stop(lab_a, second)
    assert stop.status == StopStatus.PENDING


@pytest.mark.asyncio
async def test_pickup_status_compare_and_set(db_session, lab_a):
    start = datetime.now(timezone.utc) + timedelta(hours=2)
    repository = LogisticsRepository(db_session)
    pickup = await repository.create_pickup_request(
        lab_a, PickupRequestDraft(clinic_id="clinic-1", window_start=start, window_end=start + timedelta(hours=2), package_count=1)
    )

    won = await repository.set_pickup_status(
        lab_a, pickup.id, PickupRequestStatus.PENDING, {"status": PickupRequestStatus.CANCELLED, "cancellation_reason": "dup"}
    )
    lost = await repository.set_pickup_status(
        lab_a, pickup.id, PickupRequestStatus.PENDING, {"status": PickupRequestStatus.ASSIGNED, "driver_id": "driver-1"}
    )

    assert won.ok
    assert lost.error.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert lost.error.details == {"expected_status": "Pending", "actual_status": "Cancelled"}


def test_version_check_unwraps_or_raises():
    guard = ConcurrencyGuard("route")

    assert guard.check("route-1", 2, 2).ok
    with pytest.raises(GovernanceException) as exc_info:
        guard.check("route-1", 3, 2).unwrap()

    assert exc_info.value.kind == ErrorKind.CONCURRENCY_CONFLICT
    assert (exc_info.value.error.expected_version, exc_info.value.error.actual_version) == (2, 3)
