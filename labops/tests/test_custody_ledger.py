"""
Chain-of-custody ledger tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from labops.app.core.exceptions import ErrorKind, GovernanceException
from labops.app.domain.custody.ledger import CustodyLedger, location_validation_of
from labops.app.domain.geo import geohash
from labops.app.domain.custody.verification import (
    generate_verification_code,
    validate_verification_code,
    verify_chain,
)
from labops.app.models.custody_enums import CustodyEventType, VerificationMethod
from labops.app.models.enums import AuditSeverity
from labops.app.repositories.audit_store import SqlAlchemyAuditStore
from labops.app.repositories.custody_store import SqlAlchemyCustodyEventStore
from labops.app.services.audit import AuditAction, AuditTrail


CLINIC_GEO_HASH = geohash.encode(40.0, -75.0)
LAB_GEO_HASH = geohash.encode(40.05, -75.1)
FAR_FROM_CLINIC_GEO_HASH = geohash.encode(40.00135, -75.0)
T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
DRIVER = {"id": "driver-7", "name": "Dana Driver", "role": "Driver"}
QR = {"method": VerificationMethod.QR_SCAN}


@pytest.fixture
def audit_trail(db_session):
    return AuditTrail(SqlAlchemyAuditStore(db_session))


@pytest.fixture
def store(db_session):
    return SqlAlchemyCustodyEventStore(db_session)


@pytest.fixture
def ledger(store, audit_trail):
    return CustodyLedger(store, audit=audit_trail)


@pytest.mark.asyncio
async def test_full_chain_is_complete(ledger, lab_a):
    """Departure, transit and arrival with verification form a complete chain."""
    await ledger.record_lab_departure(
        lab_a, "case-1", DRIVER, {"geo_hash": LAB_GEO_HASH, "address": "1 Lab Way"},
        verification=QR, route_id="route-1", driver_id="driver-7", vehicle_id="van-3", timestamp=T0,
    )
    await ledger.record_in_transit(
        lab_a, "case-1", DRIVER, {"coordinates": {"lat": 40.02, "lng": -75.05}},
        verification=QR, estimated_arrival=T0 + timedelta(hours=1), timestamp=T0 + timedelta(minutes=20),
    )
    arrival = await ledger.record_clinic_arrival(
        lab_a, "case-1", DRIVER, {"coordinates": {"lat": 40.00018, "lng": -75.0}},
        expected_clinic_geo_hash=CLINIC_GEO_HASH,
        verification={"method": VerificationMethod.SIGNATURE, "proof_url": "https://files.example.com/sig.png"},
        received_by="Front Desk",
        timestamp=T0 + timedelta(minutes=45),
    )

    assert not arrival.location_flagged
    assert location_validation_of(arrival).valid

    history = await ledger.get_history(lab_a, "case-1")
    assert [event.sequence for event in history] == [1, 2, 3]
    assert [event.type for event in history] == [
        CustodyEventType.LAB_DEPARTURE,
        CustodyEventType.IN_TRANSIT,
        CustodyEventType.CLINIC_ARRIVAL,
    ]
    assert history[0].metadata == {"route_id": "route-1", "driver_id": "driver-7", "vehicle_id": "van-3"}
    # Geohash is computed from coordinates at the configured precision
    assert len(history[1].location.geo_hash) == 9
    assert all(event.correlation_id == lab_a.correlation_id for event in history)

    verification = await ledger.verify(lab_a, "case-1")
    assert verification.complete
    assert verification.event_count == 3


@pytest.mark.asyncio
async def test_out_of_tolerance_arrival_is_recorded_and_flagged(ledger, audit_trail, lab_a):
    """Arrival ~150 m from the clinic with a 100 m tolerance."""
    event = await ledger.record_clinic_arrival(
        lab_a, "case-2", DRIVER, {"coordinates": {"lat": 40.00135, "lng": -75.0}},
        expected_clinic_geo_hash=CLINIC_GEO_HASH,
        tolerance_meters=100,
        timestamp=T0,
    )

    assert event.location_flagged
    validation = location_validation_of(event)
    assert not validation.valid
    assert validation.distance_meters == pytest.approx(150, abs=10)
    assert validation.tolerance_meters == 100
    assert validation.error == "Delivery location does not match clinic address"

    history = await ledger.get_history(lab_a, "case-2")
    assert len(history) == 1

    flags = await audit_trail.query(lab_a)
    flagged = [entry for entry in flags if entry.action == AuditAction.CUSTODY_LOCATION_FLAGGED]
    assert len(flagged) == 1
    assert flagged[0].severity == AuditSeverity.SECURITY
    assert flagged[0].entity_id == "case-2"


@pytest.mark.asyncio
async def test_arrival_without_clinic_geohash_is_flagged(ledger, lab_a):
    event = await ledger.record_clinic_arrival(
        lab_a, "case-3", DRIVER, {"address": "200 Main St"}, expected_clinic_geo_hash=None,
    )

    assert event.location_flagged
    assert location_validation_of(event).error == "Missing geohash data"


def test_chain_with_only_clinic_arrival_is_incomplete():
    events = [{
        "type": "ClinicArrival",
        "timestamp": T0.isoformat(),
        "verification": {"method": "SIGNATURE"},
    }]

    verification = verify_chain(events)

    assert not verification.complete
    assert verification.missing == ["Lab departure event"]
    assert verification.errors == []


def test_chain_reports_ordering_and_verification_gaps():
    events = [
        {"type": "LabDeparture", "timestamp": (T0 + timedelta(hours=1)).isoformat(), "verification": {"method": "QR_SCAN"}},
        {"type": "ClinicArrival", "timestamp": T0.isoformat(), "verification": None},
    ]

    verification = verify_chain(events)

    assert not verification.complete
    assert verification.missing == []
    assert verification.errors == ["Event 1 timestamp before previous event", "Event 1 missing verification"]


def test_empty_chain():
    verification = verify_chain([])
    assert verification.missing == ["No custody events recorded"]
    assert verification.event_count == 0


def test_chain_reports_unknown_event_types():
    events = [
        {"type": "LabDeparture", "timestamp": T0.isoformat(), "verification": {"method": "QR_SCAN"}},
        {"type": "Teleported", "timestamp": (T0 + timedelta(hours=1)).isoformat(), "verification": {"method": "QR_SCAN"}},
    ]

    verification = verify_chain(events)

    assert not verification.complete
    assert verification.missing == ["Clinic arrival event"]
    assert verification.errors == ["Event 1 has unknown type 'Teleported'"]


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["case_id", "type", "actor", "location"])
async def test_record_event_requires_core_fields(ledger, lab_a, missing):
    arguments = {
        "case_id": "case-4",
        "type": CustodyEventType.IN_TRANSIT,
        "actor": DRIVER,
        "location": {"geo_hash": LAB_GEO_HASH},
    }
    arguments[missing] = None

    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_event(lab_a, **arguments)

    assert exc_info.value.kind == ErrorKind.MISSING_FIELD


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["case_id", "actor", "location"])
async def test_clinic_arrival_requires_core_fields(ledger, lab_a, missing):
    arguments = {
        "case_id": "case-4",
        "actor": DRIVER,
        "location": {"geo_hash": CLINIC_GEO_HASH},
    }
    arguments[missing] = None

    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_clinic_arrival(lab_a, expected_clinic_geo_hash=CLINIC_GEO_HASH, **arguments)

    assert exc_info.value.kind == ErrorKind.MISSING_FIELD


@pytest.mark.asyncio
async def test_malformed_location_fails_validation(ledger, lab_a):
    location = {"coordinates": {"lat": 200.0, "lng": -75.0}}

    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_clinic_arrival(lab_a, "case-4", DRIVER, location, CLINIC_GEO_HASH)
    assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED
    assert exc_info.value.error.field == "location"

    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_event(lab_a, "case-4", CustodyEventType.IN_TRANSIT, DRIVER, location)
    assert exc_info.value.kind == ErrorKind.VALIDATION_FAILED


@pytest.mark.asyncio
async def test_clinic_arrival_without_context_is_denied(ledger):
    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_clinic_arrival(
            None, "case-4", DRIVER, {"geo_hash": FAR_FROM_CLINIC_GEO_HASH}, CLINIC_GEO_HASH,
        )

    assert exc_info.value.kind == ErrorKind.ACCESS_DENIED


@pytest.mark.asyncio
async def test_record_event_without_context_is_denied(ledger):
    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_event(None, "case-4", CustodyEventType.IN_TRANSIT, DRIVER, {"geo_hash": LAB_GEO_HASH})

    assert exc_info.value.kind == ErrorKind.ACCESS_DENIED


@pytest.mark.asyncio
async def test_history_is_tenant_scoped(ledger, lab_a, lab_b):
    await ledger.record_lab_departure(lab_a, "case-5", DRIVER, {"geo_hash": LAB_GEO_HASH})

    assert len(await ledger.get_history(lab_a, "case-5")) == 1
    assert await ledger.get_history(lab_b, "case-5") == []
    assert await ledger.get_current_holder(lab_b, "case-5") is None


@pytest.mark.asyncio
async def test_current_holder_is_latest_actor(ledger, lab_a):
    await ledger.record_lab_departure(lab_a, "case-6", DRIVER, {"geo_hash": LAB_GEO_HASH}, timestamp=T0)
    await ledger.record_patient_handoff(
        lab_a, "case-6", {"id": "staff-2", "name": "Pat Staff", "role": "ClinicStaff"}, {"geo_hash": CLINIC_GEO_HASH},
        patient_id="patient-1", timestamp=T0 + timedelta(hours=2),
    )

    holder = await ledger.get_current_holder(lab_a, "case-6")

    assert holder.actor_id == "staff-2"
    assert holder.actor_role == "ClinicStaff"
    assert holder.since == T0 + timedelta(hours=2)


@pytest.mark.asyncio
async def test_exception_events_are_critical(ledger, audit_trail, lab_a):
    event = await ledger.record_exception(
        lab_a, "case-7", DRIVER, {"geo_hash": LAB_GEO_HASH},
        exception_type="PackageDamaged", severity="High", resolution="Returned to lab",
    )

    assert event.metadata == {"exception_type": "PackageDamaged", "severity": "High", "resolution": "Returned to lab"}
    entries = await audit_trail.get_by_severity(lab_a, AuditSeverity.CRITICAL)
    assert [entry.action for entry in entries] == [AuditAction.CUSTODY_EXCEPTION_RECORDED]


@pytest.mark.asyncio
async def test_append_retries_after_sequence_conflict(store, ledger, lab_a, monkeypatch):
    """A stale sequence read loses to the unique constraint and is retried."""
    await ledger.record_lab_departure(lab_a, "case-8", DRIVER, {"geo_hash": LAB_GEO_HASH})

    original = store._last_sequence
    calls = []

    async def stale_then_fresh(case_id):
        calls.append(case_id)
        if len(calls) == 1:
            return 0
        return await original(case_id)

    monkeypatch.setattr(store, "_last_sequence", stale_then_fresh)
    event = await ledger.record_in_transit(lab_a, "case-8", DRIVER, {"geo_hash": LAB_GEO_HASH})

    assert event.sequence == 2
    assert len(calls) == 2
    assert [e.sequence for e in await ledger.get_history(lab_a, "case-8")] == [1, 2]


@pytest.mark.asyncio
async def test_append_gives_up_after_max_retries(db_session, lab_a, monkeypatch):
    store = SqlAlchemyCustodyEventStore(db_session, max_retries=2)
    ledger = CustodyLedger(store)
    await ledger.record_lab_departure(lab_a, "case-9", DRIVER, {"geo_hash": LAB_GEO_HASH})

    async def always_stale(case_id):
        return 0

    monkeypatch.setattr(store, "_last_sequence", always_stale)
    with pytest.raises(GovernanceException) as exc_info:
        await ledger.record_in_transit(lab_a, "case-9", DRIVER, {"geo_hash": LAB_GEO_HASH})

    assert exc_info.value.kind == ErrorKind.CONCURRENCY_CONFLICT


def test_verification_code_round_trip():
    code = generate_verification_code("case-1", T0)

    assert validate_verification_code("case-1", T0, code)
    assert not validate_verification_code("case-2", T0, code)
    assert not validate_verification_code("case-1", T0, None)
