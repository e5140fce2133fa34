"""
Outbound domain events.

Builders for the events the logistics domain emits when a governed
transition is accepted, and an in-memory publisher that collects them for
the caller to relay.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from labops.app.core.clock import ensure_utc, utcnow
from labops.app.core.config import settings
from labops.app.core.tenant_context import TenantContext
from labops.app.models.logistics_enums import (
    FulfillmentMethod,
    PickupRequestStatus,
    StopStatus,
)
from labops.app.models.pickup_request import PickupRequestRecord
from labops.app.models.route import Route
from labops.app.models.route_stop import RouteStopRecord
from labops.app.schemas.events import (
    ArrivalInfo,
    AssignedDriver,
    CancellationInfo,
    CaseDeliveryEvent,
    CaseDeliveryPayload,
    DeliveryCompletedEvent,
    DeliveryCompletedPayload,
    DomainEvent,
    EventMetadata,
    InternalCosts,
    PickupChangedBy,
    PickupCompletionInfo,
    PickupStatusChangedEvent,
    PickupStatusChangedPayload,
    ProofOfServicePayload,
    RouteStopStatusChangedEvent,
    RouteStopStatusChangedPayload,
    SlaMetrics,
    StopChangedBy,
    StopCompletionInfo,
)
from labops.app.schemas.logistics import SlaCompliance

logger = logging.getLogger(__name__)


def _envelope(context: TenantContext, causation_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "timestamp": utcnow(),
        "source": settings.event_source,
        "version": settings.event_schema_version,
        "metadata": EventMetadata(correlation_id=context.correlation_id, causation_id=causation_id),
    }


def build_pickup_status_changed(
    context: TenantContext,
    pickup: PickupRequestRecord,
    previous_status: PickupRequestStatus,
    new_status: PickupRequestStatus,
    user_type: str = "Dispatcher",
    driver_name: Optional[str] = None,
    vehicle_id: Optional[str] = None,
    cancellation_notes: Optional[str] = None,
) -> PickupStatusChangedEvent:
    """``logistics.pickup.status_changed`` with the context the new status calls for."""
    payload = PickupStatusChangedPayload(
        pickup_request_id=pickup.id,
        lab_id=pickup.lab_id,
        clinic_id=pickup.clinic_id,
        previous_status=previous_status,
        new_status=new_status,
        changed_by=PickupChangedBy(user_id=context.user_id, user_type=user_type),
        route_id=pickup.route_id,
        stop_id=pickup.stop_id,
    )
    if new_status == PickupRequestStatus.ASSIGNED and pickup.driver_id:
        payload.assigned_driver = AssignedDriver(
            driver_id=pickup.driver_id, driver_name=driver_name, vehicle_id=vehicle_id
        )
    elif new_status == PickupRequestStatus.ARRIVED and pickup.actual_arrival:
        payload.arrival_info = ArrivalInfo(arrived_at=pickup.actual_arrival, geo_hash=pickup.geo_hash)
    elif new_status == PickupRequestStatus.COMPLETED and pickup.completed_at:
        payload.completion_info = PickupCompletionInfo(
            completed_at=pickup.completed_at,
            verification_code=pickup.verification_code,
            signature_url=pickup.signature_url,
            package_count=pickup.package_count,
        )
    elif new_status == PickupRequestStatus.CANCELLED and pickup.cancellation_reason:
        payload.cancellation_info = CancellationInfo(reason=pickup.cancellation_reason, notes=cancellation_notes)
    return PickupStatusChangedEvent(payload=payload, **_envelope(context))


def build_stop_status_changed(
    context: TenantContext,
    stop: RouteStopRecord,
    previous_status: StopStatus,
    new_status: StopStatus,
    driver_id: Optional[str] = None,
    driver_name: Optional[str] = None,
) -> RouteStopStatusChangedEvent:
    """``logistics.route_stop.status_changed``."""
    payload = RouteStopStatusChangedPayload(
        route_id=stop.route_id,
        stop_id=stop.id,
        lab_id=stop.lab_id,
        clinic_id=stop.clinic_id,
        previous_status=previous_status,
        new_status=new_status,
        changed_by=StopChangedBy(driver_id=driver_id or context.user_id, driver_name=driver_name),
        stop_type=stop.type,
        sequence=stop.sequence,
    )
    if new_status == StopStatus.ARRIVED and stop.actual_arrival:
        payload.arrival_info = ArrivalInfo(
            arrived_at=stop.actual_arrival,
            geo_hash=stop.geo_hash,
            estimated_arrival=stop.estimated_arrival,
        )
    elif new_status == StopStatus.COMPLETED and stop.completed_at:
        payload.completion_info = StopCompletionInfo(
            completed_at=stop.completed_at,
            signature_url=stop.signature_url,
            signed_by=stop.signed_by,
            photo_url=stop.photo_url,
            verification_code=stop.verification_code,
            delivered_case_ids=list(stop.case_ids or []),
        )
    return RouteStopStatusChangedEvent(payload=payload, **_envelope(context))


def build_case_delivery_completed(
    context: TenantContext,
    case_id: str,
    stop: RouteStopRecord,
    route: Route,
    sla: SlaCompliance,
    unit_ids: Optional[List[str]] = None,
    causation_id: Optional[str] = None,
) -> CaseDeliveryEvent:
    """``case.delivery.completed`` for one case delivered at a completed stop."""
    payload = CaseDeliveryPayload(
        case_id=case_id,
        lab_id=stop.lab_id,
        clinic_id=stop.clinic_id,
        route_id=route.id,
        stop_id=stop.id,
        delivered_at=stop.completed_at,
        signature_url=stop.signature_url,
        signed_by=stop.signed_by,
        photo_url=stop.photo_url,
        geo_hash_at_delivery=stop.geo_hash_at_completion,
        verification_code=stop.verification_code,
        driver_id=route.driver_id,
        vehicle_id=route.vehicle_id,
        unit_ids=list(unit_ids or []),
        scheduled_delivery=stop.estimated_arrival,
        actual_delivery=stop.completed_at,
        sla_compliant=sla.compliant,
        variance_minutes=sla.variance_minutes,
    )
    return CaseDeliveryEvent(payload=payload, **_envelope(context, causation_id))


def build_delivery_completed(
    context: TenantContext,
    stop: RouteStopRecord,
    route: Route,
    sla: SlaCompliance,
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.IN_HOUSE,
    causation_id: Optional[str] = None,
) -> DeliveryCompletedEvent:
    """``logistics.delivery.completed``: billing view of a completed delivery stop."""
    duration_min = 0
    if route.start_time and stop.completed_at:
        elapsed = ensure_utc(stop.completed_at) - ensure_utc(route.start_time)
        duration_min = max(0, int(elapsed.total_seconds() // 60))
    payload = DeliveryCompletedPayload(
        delivery_id=stop.id,
        lab_id=stop.lab_id,
        clinic_id=stop.clinic_id,
        route_id=route.id,
        stop_id=stop.id,
        completed_at=stop.completed_at,
        fulfillment_method=fulfillment_method,
        internal_costs=InternalCosts(
            driver_id=route.driver_id,
            vehicle_id=route.vehicle_id,
            duration_min=duration_min,
        ),
        case_ids=list(stop.case_ids or []),
        package_count=len(stop.case_ids or []),
        sla_metrics=SlaMetrics(
            scheduled_delivery=stop.estimated_arrival,
            actual_delivery=stop.completed_at,
            sla_compliant=sla.compliant,
            variance_minutes=sla.variance_minutes,
        ),
        proof_of_service=ProofOfServicePayload(
            signature_url=stop.signature_url,
            signed_by=stop.signed_by,
            photo_url=stop.photo_url,
            geo_hash=stop.geo_hash_at_completion,
            verification_code=stop.verification_code,
        ),
    )
    return DeliveryCompletedEvent(payload=payload, **_envelope(context, causation_id))


class InMemoryEventPublisher:
    """
    Collects published events in order.
    
    Events are only handed to the publisher after the unit of work commits.
    """

    def __init__(self):
        self.published: List[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.published.append(event)
        logger.info(
            "Domain Event Published",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "correlation_id": event.metadata.correlation_id if event.metadata else None,
            },
        )

    def of_type(self, event_type: str) -> List[DomainEvent]:
        return [event for event in self.published if event.event_type == event_type]
