"""
Governance service.

Runs every governed mutation through the same control flow:

1. Tenant authorization of the loaded entity
2. Optimistic version check
3. State machine decision (pure, no side effects)
4. Persist (conditional UPDATE) and mirror custody events
5. Audit append
6. Commit, then publish outbound events

All steps of one call share the context's correlation id. Access denials and
concurrency conflicts are written to the audit trail before the rejection is
returned.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from labops.app.core.clock import parse_datetime, utcnow
from labops.app.core.concurrency import ConcurrencyGuard
from labops.app.core.exceptions import (
    AUDITED_KINDS,
    ErrorKind,
    GovernanceError,
    GovernanceException,
    Result,
    access_denied,
    validation_failed,
)
from labops.app.core.guards import authorize
from labops.app.core.observability import OUTCOME_DENIED, OUTCOME_REJECTED, OperationTracker, track_operation
from labops.app.core.tenant_context import TenantContext
from labops.app.domain.custody.ledger import CustodyLedger
from labops.app.domain.custody.verification import generate_verification_code
from labops.app.domain.geo.validator import DEFAULT_TOLERANCE_METERS
from labops.app.domain.logistics.validation import calculate_sla_compliance, validate_pickup_request
from labops.app.domain.workflow.requirements import normalize_fields
from labops.app.domain.workflow.state_machine import transition
from labops.app.models.custody_enums import CustodyEventType
from labops.app.models.enums import EntityType
from labops.app.models.logistics_enums import (
    FulfillmentMethod,
    RouteStatus,
    StopStatus,
    StopType,
)
from labops.app.models.route import Route
from labops.app.models.route_stop import RouteStopRecord
from labops.app.repositories.audit_store import SqlAlchemyAuditStore
from labops.app.repositories.base import EventPublisher
from labops.app.repositories.custody_store import SqlAlchemyCustodyEventStore
from labops.app.repositories.logistics import LogisticsRepository
from labops.app.schemas.case import CaseResponse, CaseUpdate
from labops.app.schemas.custody import CustodyEvent
from labops.app.schemas.events import DomainEvent
from labops.app.schemas.logistics import PickupRequest, PickupRequestDraft
from labops.app.schemas.logistics import Route as RouteModel
from labops.app.schemas.logistics import RouteStop
from labops.app.services.audit import AuditAction, AuditTrail
from labops.app.services.events import (
    InMemoryEventPublisher,
    build_case_delivery_completed,
    build_delivery_completed,
    build_pickup_status_changed,
    build_stop_status_changed,
)
from labops.app.services.webhooks import parse_crm_pickup, parse_ehr_pickup

logger = logging.getLogger(__name__)

# Kinds audited when a governed call rejects
SECURITY_KINDS = AUDITED_KINDS | {ErrorKind.INVALID_SIGNATURE}

# Transition payload field -> column
PICKUP_COLUMNS = {
    "driverId": "driver_id",
    "routeId": "route_id",
    "stopId": "stop_id",
    "actualArrival": "actual_arrival",
    "geoLocation": "geo_hash",
    "completedAt": "completed_at",
    "signatureUrl": "signature_url",
    "packageCount": "package_count",
    "skipReason": "skip_reason",
    "rescheduleReason": "reschedule_reason",
    "newWindowStart": "window_start",
    "newWindowEnd": "window_end",
    "cancellationReason": "cancellation_reason",
}

STOP_COLUMNS = {
    "estimatedArrival": "estimated_arrival",
    "actualArrival": "actual_arrival",
    "geoHash": "geo_hash",
    "completedAt": "completed_at",
    "geoHashAtCompletion": "geo_hash_at_completion",
    "signatureUrl": "signature_url",
    "signedBy": "signed_by",
    "photoUrl": "photo_url",
    "verificationCode": "verification_code",
    "skipReason": "skip_reason",
}

ROUTE_COLUMNS = {
    "driverId": "driver_id",
    "vehicleId": "vehicle_id",
    "startTime": "start_time",
    "endTime": "end_time",
    "cancellationReason": "cancellation_reason",
}

DATETIME_COLUMNS = {
    "actual_arrival",
    "completed_at",
    "estimated_arrival",
    "window_start",
    "window_end",
    "start_time",
    "end_time",
}


def _columns(payload: Mapping[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    changes = {}
    for name, column in mapping.items():
        if name not in payload:
            continue
        value = payload[name]
        changes[column] = parse_datetime(value) if column in DATETIME_COLUMNS else value
    return changes


def _with_stored(stored: Dict[str, Any], payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Stored values first, caller payload on top."""
    facts = {key: value for key, value in stored.items() if value is not None}
    facts.update(payload)
    return facts


class GovernanceService:
    """
    Governed operations for one unit of work.
    
    Usage:
        async with get_session_factory()() as db:
            service = GovernanceService(db)
            result = await service.transition_pickup(context, pickup_id, "Assigned", fields)
    """

    def __init__(self, db: AsyncSession, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.repository = LogisticsRepository(db)
        self.audit = AuditTrail(SqlAlchemyAuditStore(db))
        self.ledger = CustodyLedger(SqlAlchemyCustodyEventStore(db), audit=self.audit)
        self.publisher = publisher if publisher is not None else InMemoryEventPublisher()

    # Shared steps

    async def _reject(
        self,
        context: Optional[TenantContext],
        error: GovernanceError,
        tracker: OperationTracker,
    ) -> Result:
        """Abort the unit of work; security-relevant errors are audited first."""
        await self.db.rollback()
        if error.kind in SECURITY_KINDS:
            await self.audit.record_security_error(context, error, correlation_id=tracker.correlation_id)
            await self.db.commit()
        outcome = OUTCOME_DENIED if error.kind in (ErrorKind.ACCESS_DENIED, ErrorKind.INVALID_SIGNATURE) else OUTCOME_REJECTED
        tracker.mark(outcome, error_code=error.error_code)
        return Result.rejected(error)

    async def _publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            await self.publisher.publish(event)

    def _driver(self, route: Optional[Route], context: TenantContext, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "id": fields.get("driverId") or (route.driver_id if route else None) or context.user_id or "system",
            "name": fields.get("driverName") or (route.driver_name if route else None),
            "role": "Driver",
        }

    # Pickup requests

    async def create_pickup_request(
        self,
        context: Optional[TenantContext],
        draft: PickupRequestDraft,
        now: Optional[datetime] = None,
    ) -> Result[PickupRequest]:
        """Validate a draft and persist it as a Pending pickup request."""
        with track_operation(
            "create_pickup_request",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            pickup_source=draft.source,
        ) as tracker:
            try:
                authorize(context, draft.lab_id or (context.lab_id if context else None), entity_type="pickup")
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            if not draft.lab_id:
                draft = draft.model_copy(update={"lab_id": context.lab_id})
            
            report = validate_pickup_request(draft, now)
            if not report.valid:
                return await self._reject(context, validation_failed("pickup", "; ".join(report.errors)), tracker)
            
            pickup = await self.repository.create_pickup_request(context, draft)
            pickup.verification_code = generate_verification_code(pickup.id, now or utcnow())
            await self.db.flush()
            pickup = await self.repository.get_pickup(context, pickup.id)
            
            await self.audit.log_event(
                AuditAction.PICKUP_REQUEST_RECEIVED,
                context,
                entity_type="pickup",
                entity_id=pickup.id,
                new_status=pickup.status,
                metadata={"source": draft.source, "external_reference": draft.external_reference},
            )
            response = PickupRequest.model_validate(pickup)
            await self.db.commit()
            return Result.accepted(response)

    async def ingest_crm_pickup(
        self,
        context: Optional[TenantContext],
        raw: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> Result[PickupRequest]:
        """Handle a ``crm.pickup.requested`` event."""
        try:
            draft = parse_crm_pickup(raw)
        except GovernanceException as exc:
            with track_operation("ingest_crm_pickup", context.correlation_id if context else None) as tracker:
                return await self._reject(context, exc.error, tracker)
        return await self.create_pickup_request(context, draft, now)

    async def ingest_ehr_pickup(
        self,
        context: Optional[TenantContext],
        raw: Mapping[str, Any],
        secrets: Optional[Dict[str, str]] = None,
        now: Optional[datetime] = None,
    ) -> Result[PickupRequest]:
        """Handle a signed ``ehr.pickup.requested`` webhook."""
        try:
            draft = parse_ehr_pickup(raw, secrets)
        except GovernanceException as exc:
            with track_operation("ingest_ehr_pickup", context.correlation_id if context else None) as tracker:
                return await self._reject(context, exc.error, tracker)
        return await self.create_pickup_request(context, draft, now)

    async def transition_pickup(
        self,
        context: Optional[TenantContext],
        pickup_id: str,
        requested_status: Any,
        fields: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Result[PickupRequest]:
        """
        Move a pickup request to ``requested_status``.
        
        The write is compare-and-set on the status that was read, so two
        concurrent transitions of the same pickup cannot both succeed.
        
        Args:
            context: Tenant context of the caller
            pickup_id: Pickup request ID
            requested_status: Target PickupRequestStatus (member or value)
            fields: Transition payload (camelCase or snake_case keys) plus
                facts such as driverActive or clinicGeoHash
            now: Reference time for date rules
            
        Returns:
            Result with the updated PickupRequest; warnings carry
            LOCATION_OUT_OF_TOLERANCE advisories
        """
        with track_operation(
            "transition_pickup",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            entity_id=pickup_id,
            requested_status=getattr(requested_status, "value", requested_status),
        ) as tracker:
            payload = normalize_fields(fields)
            try:
                if context is None:
                    raise GovernanceException(access_denied(None, None, entity_type="pickup", entity_id=pickup_id))
                pickup = await self.repository.get_pickup(context, pickup_id)
                route = None
                route_id = payload.get("routeId") or pickup.route_id
                if route_id:
                    route = await self.repository.get_route(context, route_id)
                stop = None
                stop_id = payload.get("stopId") or pickup.stop_id
                if stop_id:
                    stop = await self.repository.get_stop(context, stop_id)
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            
            facts = _with_stored(
                {
                    "clinicId": pickup.clinic_id,
                    "windowStart": pickup.window_start,
                    "windowEnd": pickup.window_end,
                    "packageCount": pickup.package_count,
                    "driverId": pickup.driver_id,
                    "routeId": pickup.route_id,
                    "stopId": pickup.stop_id,
                    "actualArrival": pickup.actual_arrival,
                },
                payload,
            )
            if route is not None:
                facts["routeStatus"] = route.status
            if stop is not None and stop.clinic_geo_hash:
                facts["clinicGeoHash"] = stop.clinic_geo_hash
            facts["expectedVerificationCode"] = pickup.verification_code
            
            previous_status = pickup.status
            decision = transition(EntityType.PICKUP_REQUEST, previous_status, requested_status, facts, now=now, entity_id=pickup_id)
            if not decision.ok:
                return await self._reject(context, decision.error, tracker)
            new_status = decision.value.new_status
            
            changes = _columns(payload, PICKUP_COLUMNS)
            changes["status"] = new_status
            written = await self.repository.set_pickup_status(context, pickup_id, previous_status, changes)
            if not written.ok:
                return await self._reject(context, written.error, tracker)
            
            pickup = await self.repository.get_pickup(context, pickup_id)
            await self.audit.record_transition(
                context, EntityType.PICKUP_REQUEST, pickup_id, previous_status, new_status,
                warnings=decision.warnings,
                metadata={"skipped_rules": list(decision.value.skipped_rules)},
            )
            event = build_pickup_status_changed(
                context, pickup, previous_status, new_status,
                driver_name=route.driver_name if route is not None else None,
                vehicle_id=route.vehicle_id if route is not None else None,
            )
            response = PickupRequest.model_validate(pickup)
            await self.db.commit()
            await self._publish([event])
            return Result.accepted(response, warnings=decision.warnings)

    # Route stops

    async def transition_stop(
        self,
        context: Optional[TenantContext],
        stop_id: str,
        requested_status: Any,
        expected_route_version: int,
        fields: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Result[RouteStop]:
        """
        Move a route stop to ``requested_status``, committing through its
        route's version.
        
        A delivery stop entering Arrived records a ClinicArrival custody event
        for each of its cases, validated against the clinic geohash; a
        delivery stop entering Completed emits the case and finance delivery
        events.
        """
        with track_operation(
            "transition_stop",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            entity_id=stop_id,
            requested_status=getattr(requested_status, "value", requested_status),
        ) as tracker:
            payload = normalize_fields(fields)
            try:
                if context is None:
                    raise GovernanceException(access_denied(None, None, entity_type="stop", entity_id=stop_id))
                stop = await self.repository.get_stop(context, stop_id)
                route = await self.repository.get_route(context, stop.route_id)
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            
            checked = ConcurrencyGuard("route").check(route.id, route.version, expected_route_version)
            if not checked.ok:
                return await self._reject(context, checked.error, tracker)
            
            requested_method = payload.get("fulfillmentMethod", FulfillmentMethod.IN_HOUSE.value)
            try:
                fulfillment_method = FulfillmentMethod(getattr(requested_method, "value", requested_method))
            except ValueError:
                return await self._reject(
                    context,
                    validation_failed(
                        "stop", f"Unknown fulfillmentMethod '{requested_method}'",
                        field="fulfillmentMethod", entity_id=stop_id,
                    ),
                    tracker,
                )
            
            facts = _with_stored(
                {
                    "clinicId": stop.clinic_id,
                    "type": stop.type,
                    "sequence": stop.sequence,
                    "estimatedArrival": stop.estimated_arrival,
                    "actualArrival": stop.actual_arrival,
                },
                payload,
            )
            facts["type"] = stop.type
            facts["routeStatus"] = route.status
            if route.start_time is not None:
                facts["routeStartTime"] = route.start_time
            if stop.clinic_geo_hash:
                facts["clinicGeoHash"] = stop.clinic_geo_hash
            
            previous_status = stop.status
            decision = transition(EntityType.ROUTE_STOP, previous_status, requested_status, facts, now=now, entity_id=stop_id)
            if not decision.ok:
                return await self._reject(context, decision.error, tracker)
            new_status = decision.value.new_status
            
            changes = _columns(payload, STOP_COLUMNS)
            changes["status"] = new_status
            written = await self.repository.update_stop(context, stop, expected_route_version, changes)
            if not written.ok:
                return await self._reject(context, written.error, tracker)
            
            stop = await self.repository.get_stop(context, stop_id)
            route = await self.repository.get_route(context, stop.route_id)
            
            if stop.type == StopType.DELIVERY and new_status == StopStatus.ARRIVED:
                tolerance = payload.get("toleranceMeters")
                for case_id in stop.case_ids or []:
                    await self.ledger.record_clinic_arrival(
                        context,
                        case_id,
                        actor=self._driver(route, context, payload),
                        location={"geo_hash": stop.geo_hash, "coordinates": payload.get("coordinates")},
                        expected_clinic_geo_hash=stop.clinic_geo_hash,
                        tolerance_meters=DEFAULT_TOLERANCE_METERS if tolerance is None else tolerance,
                        route_id=route.id,
                        timestamp=stop.actual_arrival,
                    )
            
            await self.audit.record_transition(
                context, EntityType.ROUTE_STOP, stop_id, previous_status, new_status,
                warnings=decision.warnings,
                metadata={"route_id": route.id, "route_version": written.value},
            )
            events: List[DomainEvent] = [build_stop_status_changed(
                context, stop, previous_status, new_status,
                driver_id=route.driver_id,
                driver_name=route.driver_name,
            )]
            if stop.type == StopType.DELIVERY and new_status == StopStatus.COMPLETED:
                events.extend(await self._delivery_events(context, stop, route, events[0].event_id, fulfillment_method))
            response = RouteStop.model_validate(stop)
            await self.db.commit()
            await self._publish(events)
            return Result.accepted(response, warnings=decision.warnings)

    async def _delivery_events(
        self,
        context: TenantContext,
        stop: RouteStopRecord,
        route: Route,
        causation_id: str,
        fulfillment_method: FulfillmentMethod,
    ) -> List[DomainEvent]:
        sla = calculate_sla_compliance(stop.estimated_arrival or stop.completed_at, stop.completed_at)
        cases = {case.id: case for case in await self.repository.list_cases(context, list(stop.case_ids or []))}
        events: List[DomainEvent] = []
        for case_id in stop.case_ids or []:
            case = cases.get(case_id)
            events.append(build_case_delivery_completed(
                context, case_id, stop, route, sla,
                unit_ids=case.unit_ids if case is not None else None,
                causation_id=causation_id,
            ))
        events.append(build_delivery_completed(
            context, stop, route, sla,
            fulfillment_method=fulfillment_method,
            causation_id=causation_id,
        ))
        return events

    # Routes

    async def transition_route(
        self,
        context: Optional[TenantContext],
        route_id: str,
        requested_status: Any,
        expected_version: int,
        fields: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Result[RouteModel]:
        """
        Move a route to ``requested_status`` if it is still at
        ``expected_version``.
        
        Starting a route records a LabDeparture custody event for every case
        on its delivery stops.
        """
        with track_operation(
            "transition_route",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            entity_id=route_id,
            requested_status=getattr(requested_status, "value", requested_status),
        ) as tracker:
            payload = normalize_fields(fields)
            try:
                if context is None:
                    raise GovernanceException(access_denied(None, None, entity_type="route", entity_id=route_id))
                route = await self.repository.get_route(context, route_id)
                stops = await self.repository.list_route_stops(context, route_id)
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            
            checked = ConcurrencyGuard("route").check(route.id, route.version, expected_version)
            if not checked.ok:
                return await self._reject(context, checked.error, tracker)
            
            facts = _with_stored(
                {
                    "driverId": route.driver_id,
                    "vehicleId": route.vehicle_id,
                    "date": route.date,
                    "startTime": route.start_time,
                    "endTime": route.end_time,
                },
                payload,
            )
            facts["stops"] = [{"status": stop.status} for stop in stops]
            
            previous_status = route.status
            decision = transition(EntityType.ROUTE, previous_status, requested_status, facts, now=now, entity_id=route_id)
            if not decision.ok:
                return await self._reject(context, decision.error, tracker)
            new_status = decision.value.new_status
            
            changes = _columns(payload, ROUTE_COLUMNS)
            changes["status"] = new_status
            written = await self.repository.update_route(context, route_id, expected_version, changes)
            if not written.ok:
                return await self._reject(context, written.error, tracker)
            
            route = await self.repository.get_route(context, route_id)
            
            if new_status == RouteStatus.IN_PROGRESS:
                location = payload.get("location") or {
                    "geo_hash": route.origin_geo_hash,
                    "address": route.origin_address,
                }
                for stop in stops:
                    if stop.type != StopType.DELIVERY:
                        continue
                    for case_id in stop.case_ids or []:
                        await self.ledger.record_lab_departure(
                            context,
                            case_id,
                            actor=self._driver(route, context, payload),
                            location=location,
                            route_id=route.id,
                            driver_id=route.driver_id,
                            vehicle_id=route.vehicle_id,
                            timestamp=route.start_time,
                        )
            
            await self.audit.record_transition(
                context, EntityType.ROUTE, route_id, previous_status, new_status,
                warnings=decision.warnings,
                metadata={"version": written.value},
            )
            response = RouteModel.model_validate(route)
            response.stops = [RouteStop.model_validate(stop) for stop in stops]
            await self.db.commit()
            return Result.accepted(response, warnings=decision.warnings)

    # Cases

    async def update_case(self, context: Optional[TenantContext], case_id: str, update: CaseUpdate) -> Result[CaseResponse]:
        """
        Apply a case update under optimistic locking.
        
        Returns:
            Result with the updated case (version incremented by one), or
            CONCURRENCY_CONFLICT when ``update.expected_version`` is stale
        """
        with track_operation(
            "update_case",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            entity_id=case_id,
        ) as tracker:
            try:
                if context is None:
                    raise GovernanceException(access_denied(None, None, entity_type="case", entity_id=case_id))
                case = await self.repository.get_case(context, case_id)
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            
            checked = ConcurrencyGuard("case").apply_update(case, update)
            if not checked.ok:
                return await self._reject(context, checked.error, tracker)
            
            previous_version, previous_status = case.version, case.status
            changes = update.changes()
            written = await self.repository.update_case(context, case_id, update.expected_version, changes)
            if not written.ok:
                return await self._reject(context, written.error, tracker)
            
            case = await self.repository.get_case(context, case_id)
            await self.audit.record_case_update(
                context, case_id, previous_version, written.value, changes,
                previous_status=previous_status,
                new_status=case.status,
            )
            response = CaseResponse.model_validate(case)
            await self.db.commit()
            return Result.accepted(response)

    # Custody

    async def record_custody_event(
        self,
        context: Optional[TenantContext],
        case_id: str,
        type: CustodyEventType,
        actor: Any,
        location: Any,
        expected_clinic_geo_hash: Optional[str] = None,
        **details: Any,
    ) -> Result[CustodyEvent]:
        """
        Record a custody event for a case owned by the context's lab.
        
        A ClinicArrival with ``expected_clinic_geo_hash`` is location-checked
        and flagged when out of tolerance.
        """
        with track_operation(
            "record_custody_event",
            context.correlation_id if context else None,
            lab_id=context.lab_id if context else None,
            entity_id=case_id,
            custody_type=getattr(type, "value", type),
        ) as tracker:
            try:
                if context is None:
                    raise GovernanceException(access_denied(None, None, entity_type="case", entity_id=case_id))
                await self.repository.get_case(context, case_id)
                if type == CustodyEventType.CLINIC_ARRIVAL and expected_clinic_geo_hash:
                    event = await self.ledger.record_clinic_arrival(
                        context, case_id, actor, location, expected_clinic_geo_hash, **details
                    )
                else:
                    event = await self.ledger.record_event(context, case_id, type, actor, location, **details)
            except GovernanceException as exc:
                return await self._reject(context, exc.error, tracker)
            
            await self.db.commit()
            return Result.accepted(event)
