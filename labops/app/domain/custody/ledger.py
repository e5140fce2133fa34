"""
Chain-of-custody ledger.

Records physical handoffs of lab cases (lab departure, transit, clinic
arrival, patient handoff, exceptions) with geolocation and verification
proof. Events are immutable once appended; corrections are new Exception
events.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from labops.app.core.clock import utcnow
from labops.app.core.config import settings
from pydantic import ValidationError

from labops.app.core.exceptions import GovernanceException, access_denied, missing_field, validation_failed
from labops.app.core.guards import filter_to_tenant
from labops.app.core.tenant_context import TenantContext
from labops.app.domain.custody.verification import validate_delivery_location, verify_chain
from labops.app.domain.geo import geohash
from labops.app.domain.geo.validator import DEFAULT_TOLERANCE_METERS
from labops.app.models.custody_enums import CustodyEventType
from labops.app.repositories.base import CustodyEventStore
from labops.app.schemas.custody import (
    Actor,
    ChainVerification,
    CurrentHolder,
    CustodyEvent,
    Location,
    LocationValidation,
    NewCustodyEvent,
    Verification,
)

if TYPE_CHECKING:
    from labops.app.services.audit import AuditTrail

logger = logging.getLogger(__name__)

ActorInput = Union[Actor, Mapping[str, Any]]
LocationInput = Union[Location, Mapping[str, Any]]
VerificationInput = Union[Verification, Mapping[str, Any]]


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _require(context: Optional[TenantContext], case_id, type, actor, location) -> None:
    if not case_id:
        raise GovernanceException(missing_field("caseId"))
    if not type:
        raise GovernanceException(missing_field("type"))
    if not actor:
        raise GovernanceException(missing_field("actor"))
    if location is None:
        raise GovernanceException(missing_field("location"))
    if context is None:
        raise GovernanceException(access_denied(None, None, entity_type="case", entity_id=case_id))


class CustodyLedger:
    """
    Append-only custody ledger for one unit of work.
    
    Usage:
        ledger = CustodyLedger(store, audit=audit_trail)
        event = await ledger.record_lab_departure(context, case_id, actor=driver, location=lab)
    """

    def __init__(
        self,
        store: CustodyEventStore,
        audit: Optional["AuditTrail"] = None,
        geohash_precision: Optional[int] = None,
    ):
        self.store = store
        self.audit = audit
        self.geohash_precision = geohash_precision or settings.geohash_precision

    def _resolve_location(self, location: LocationInput) -> Location:
        location = location if isinstance(location, Location) else Location.model_validate(location)
        if location.coordinates is not None:
            computed = geohash.encode(location.coordinates.lat, location.coordinates.lng, self.geohash_precision)
            location = location.model_copy(update={"geo_hash": computed})
        return location

    async def record_event(
        self,
        context: Optional[TenantContext],
        case_id: Optional[str],
        type: Optional[CustodyEventType],
        actor: Optional[ActorInput],
        location: Optional[LocationInput],
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
        location_flagged: bool = False,
    ) -> CustodyEvent:
        """
        Append a custody event for a case.
        
        Args:
            context: Tenant context; the event is recorded under its lab
            case_id: Case changing hands
            type: CustodyEventType
            actor: Who takes custody ({id, name, role})
            location: {coordinates?, address?, geo_hash?}; the geohash is
                computed from coordinates when present, otherwise kept as given
                (possibly None, which excludes the event from location checks)
            verification: Proof of handoff ({method, proof_url, verification_code})
            notes: Free text
            metadata: Event-type specific context
            timestamp: Event time (defaults to now)
            location_flagged: Mark the event for audit review
            
        Returns:
            Recorded CustodyEvent
            
        Raises:
            GovernanceException: MISSING_FIELD when case_id, type, actor or
                location is absent; ACCESS_DENIED without a tenant context
                VALIDATION_FAILED when a present field is malformed
        """
        _require(context, case_id, type, actor, location)
        
        try:
            new_event = NewCustodyEvent(
                lab_id=context.lab_id,
                case_id=case_id,
                type=CustodyEventType(type),
                timestamp=timestamp or utcnow(),
                actor=actor if isinstance(actor, Actor) else Actor.model_validate(actor),
                location=self._resolve_location(location),
                verification=verification,
                notes=notes or "",
                metadata=metadata or {},
                location_flagged=location_flagged,
                correlation_id=context.correlation_id,
            )
        except ValueError as exc:
            raise GovernanceException(
                validation_failed("custody_event", f"Invalid custody event: {exc}", entity_id=case_id)
            ) from exc
        event = await self.store.append(new_event)
        
        logger.info(
            "Custody Event Recorded",
            extra={
                "lab_id": context.lab_id,
                "case_id": case_id,
                "custody_type": event.type.value,
                "sequence": event.sequence,
                "location_flagged": event.location_flagged,
                "correlation_id": context.correlation_id,
            },
        )
        if self.audit is not None:
            await self.audit.record_custody_event(context, event)
        return event

    async def record_lab_departure(
        self,
        context: TenantContext,
        case_id: str,
        actor: ActorInput,
        location: LocationInput,
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        route_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CustodyEvent:
        return await self.record_event(
            context, case_id, CustodyEventType.LAB_DEPARTURE, actor, location,
            verification=verification,
            notes=notes,
            metadata={**_compact({"route_id": route_id, "driver_id": driver_id, "vehicle_id": vehicle_id}), **(metadata or {})},
            timestamp=timestamp,
        )

    async def record_in_transit(
        self,
        context: TenantContext,
        case_id: str,
        actor: ActorInput,
        location: LocationInput,
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        route_id: Optional[str] = None,
        estimated_arrival: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CustodyEvent:
        extra = _compact({
            "route_id": route_id,
            "estimated_arrival": estimated_arrival.isoformat() if estimated_arrival else None,
        })
        return await self.record_event(
            context, case_id, CustodyEventType.IN_TRANSIT, actor, location,
            verification=verification,
            notes=notes,
            metadata={**extra, **(metadata or {})},
            timestamp=timestamp,
        )

    async def record_clinic_arrival(
        self,
        context: TenantContext,
        case_id: str,
        actor: ActorInput,
        location: LocationInput,
        expected_clinic_geo_hash: Optional[str],
        tolerance_meters: float = DEFAULT_TOLERANCE_METERS,
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        route_id: Optional[str] = None,
        received_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CustodyEvent:
        """
        Record arrival at the clinic after checking the location.
        
        An out-of-tolerance (or unverifiable) location does not block the
        record: it is logged, stored on the event as ``location_flagged`` with
        the validation result in its metadata, and sent to the audit trail.
        """
        _require(context, case_id, CustodyEventType.CLINIC_ARRIVAL, actor, location)
        try:
            resolved_location = self._resolve_location(location)
        except ValidationError as exc:
            raise GovernanceException(
                validation_failed(
                    "custody_event", f"Invalid location: {exc.error_count()} error(s)",
                    field="location", entity_id=case_id,
                )
            ) from exc
        validation = validate_delivery_location(
            resolved_location.geo_hash, expected_clinic_geo_hash, tolerance_meters
        )
        if not validation.valid:
            logger.warning(
                "Delivery location validation failed",
                extra={
                    "lab_id": context.lab_id,
                    "case_id": case_id,
                    "reason": validation.error,
                    "distance_meters": validation.distance_meters,
                    "tolerance_meters": validation.tolerance_meters,
                    "correlation_id": context.correlation_id,
                },
            )
        
        extra = _compact({"route_id": route_id, "received_by": received_by})
        extra["location_validation"] = validation.model_dump()
        event = await self.record_event(
            context, case_id, CustodyEventType.CLINIC_ARRIVAL, actor, resolved_location,
            verification=verification,
            notes=notes,
            metadata={**extra, **(metadata or {})},
            timestamp=timestamp,
            location_flagged=not validation.valid,
        )
        if not validation.valid and self.audit is not None:
            await self.audit.record_location_flag(context, "case", case_id, validation)
        return event

    async def record_patient_handoff(
        self,
        context: TenantContext,
        case_id: str,
        actor: ActorInput,
        location: LocationInput,
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        patient_id: Optional[str] = None,
        patient_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CustodyEvent:
        return await self.record_event(
            context, case_id, CustodyEventType.PATIENT_HANDOFF, actor, location,
            verification=verification,
            notes=notes,
            metadata={**_compact({"patient_id": patient_id, "patient_name": patient_name}), **(metadata or {})},
            timestamp=timestamp,
        )

    async def record_exception(
        self,
        context: TenantContext,
        case_id: str,
        actor: ActorInput,
        location: LocationInput,
        exception_type: str,
        severity: Optional[str] = None,
        resolution: Optional[str] = None,
        verification: Optional[VerificationInput] = None,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> CustodyEvent:
        """Record an incident or a correction to an earlier event."""
        extra = _compact({"exception_type": exception_type, "severity": severity, "resolution": resolution})
        return await self.record_event(
            context, case_id, CustodyEventType.EXCEPTION, actor, location,
            verification=verification,
            notes=notes,
            metadata={**extra, **(metadata or {})},
            timestamp=timestamp,
        )

    async def get_history(
        self,
        context: TenantContext,
        case_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CustodyEvent]:
        """Custody events for a case in recorded order, scoped to the context's lab."""
        if context is None:
            raise GovernanceException(access_denied(None, None, entity_type="case", entity_id=case_id))
        events = await self.store.list_for_case(context.lab_id, case_id, since=since, until=until)
        return filter_to_tenant(events, context)

    async def get_current_holder(self, context: TenantContext, case_id: str) -> Optional[CurrentHolder]:
        events = await self.get_history(context, case_id)
        if not events:
            return None
        latest = events[-1]
        return CurrentHolder(
            actor_id=latest.actor.id,
            actor_name=latest.actor.name,
            actor_role=latest.actor.role,
            since=latest.timestamp,
            location=latest.location,
        )

    async def verify(self, context: TenantContext, case_id: str) -> ChainVerification:
        return verify_chain(await self.get_history(context, case_id))


def location_validation_of(event: CustodyEvent) -> Optional[LocationValidation]:
    """Validation result stored on a clinic-arrival event, if any."""
    raw = event.metadata.get("location_validation")
    return LocationValidation.model_validate(raw) if raw else None
