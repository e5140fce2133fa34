"""
Domain event schemas.

Envelopes and payloads exchanged with the cases, finance, CRM and EHR
domains. Python attributes are snake_case; the wire format is camelCase
(``model_dump(by_alias=True)``).
"""

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional

from labops.app.core.clock import UtcDateTime
from labops.app.models.logistics_enums import (
    DeliveryType,
    FulfillmentMethod,
    PickupRequestStatus,
    StopStatus,
    StopType,
)


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class EventMetadata(CamelModel):
    """Tracing links between related events across domains."""
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    retry_count: Optional[int] = None
    webhook_id: Optional[str] = None


class DomainEvent(CamelModel):
    """Common envelope carried by every event."""
    event_id: str
    event_type: str
    timestamp: UtcDateTime
    source: str
    version: str
    metadata: Optional[EventMetadata] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Coordinates(CamelModel):
    lat: float
    lng: float


class Address(CamelModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    zip: str
    phone: Optional[str] = None
    contact_person: Optional[str] = None
    coordinates: Optional[Coordinates] = None


# Logistics -> Cases

class CaseDeliveryPayload(CamelModel):
    case_id: str
    lab_id: str
    clinic_id: str
    route_id: str
    stop_id: str
    delivered_at: UtcDateTime
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    photo_url: Optional[str] = None
    geo_hash_at_delivery: Optional[str] = None
    verification_code: Optional[str] = None
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    unit_ids: List[str] = Field(default_factory=list)
    scheduled_delivery: Optional[UtcDateTime] = None
    actual_delivery: UtcDateTime
    sla_compliant: bool
    variance_minutes: int


class CaseDeliveryEvent(DomainEvent):
    event_type: Literal["case.delivery.completed"] = "case.delivery.completed"
    payload: CaseDeliveryPayload


# CRM -> Logistics

class RequestedBy(CamelModel):
    user_id: str
    name: Optional[str] = None
    role: Optional[str] = None


class CrmPickupPayload(CamelModel):
    request_id: str
    lab_id: str
    clinic_id: str
    requested_by: Optional[RequestedBy] = None
    window_start: UtcDateTime
    window_end: UtcDateTime
    address: Optional[Address] = None
    package_count: int
    package_specs: Optional[Dict[str, Any]] = None
    special_handling: List[str] = Field(default_factory=list)
    associated_case_ids: List[str] = Field(default_factory=list)
    is_rush: bool = False
    notes: Optional[str] = None


class CrmPickupRequestedEvent(DomainEvent):
    event_type: Literal["crm.pickup.requested"] = "crm.pickup.requested"
    source: str = "crm"
    payload: CrmPickupPayload


# Logistics -> Finance

class ExternalProviderCost(CamelModel):
    provider_id: str
    provider_name: str
    delivery_id: str
    invoiced_amount: float
    currency: str = "USD"


class InternalCosts(CamelModel):
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    distance_km: float = 0.0
    duration_min: int = 0
    fuel_cost: Optional[float] = None
    labor_cost: Optional[float] = None


class SlaMetrics(CamelModel):
    scheduled_delivery: Optional[UtcDateTime] = None
    actual_delivery: UtcDateTime
    sla_compliant: bool
    variance_minutes: int


class ProofOfServicePayload(CamelModel):
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    photo_url: Optional[str] = None
    geo_hash: Optional[str] = None
    verification_code: Optional[str] = None


class DeliveryCompletedPayload(CamelModel):
    delivery_id: str
    lab_id: str
    clinic_id: str
    route_id: str
    stop_id: str
    completed_at: UtcDateTime
    delivery_type: DeliveryType = DeliveryType.STANDARD
    fulfillment_method: FulfillmentMethod
    external_provider: Optional[ExternalProviderCost] = None
    internal_costs: Optional[InternalCosts] = None
    case_ids: List[str] = Field(default_factory=list)
    package_count: int = 0
    sla_metrics: SlaMetrics
    proof_of_service: ProofOfServicePayload


class DeliveryCompletedEvent(DomainEvent):
    event_type: Literal["logistics.delivery.completed"] = "logistics.delivery.completed"
    payload: DeliveryCompletedPayload


# EHR -> Logistics

class HourMinuteWindow(CamelModel):
    start: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    end: str = Field(..., pattern=r"^\d{2}:\d{2}$")


class EhrPickupPayload(CamelModel):
    ehr_system: str  # DentrixAscend_V2, OpenDental, Eaglesoft, Other
    ehr_request_id: str
    lab_id: str
    clinic_id: str
    patient_id: str
    patient_name: Optional[str] = None
    case_number: Optional[str] = None
    requested_pickup_date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    time_window: HourMinuteWindow
    package_count: int
    description: Optional[str] = None
    is_rush: bool = False
    pickup_address: Optional[Address] = None
    special_instructions: Optional[str] = None
    external_reference: str


class EhrPickupWebhook(DomainEvent):
    event_type: Literal["ehr.pickup.requested"] = "ehr.pickup.requested"
    source: str = "ehr"
    payload: EhrPickupPayload
    signature: Optional[str] = None


# Lifecycle state changes

class PickupChangedBy(CamelModel):
    user_id: Optional[str] = None
    user_type: str = "System"  # Driver, Dispatcher, System


class AssignedDriver(CamelModel):
    driver_id: str
    driver_name: Optional[str] = None
    vehicle_id: Optional[str] = None


class ArrivalInfo(CamelModel):
    arrived_at: UtcDateTime
    geo_hash: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    estimated_arrival: Optional[UtcDateTime] = None


class PickupCompletionInfo(CamelModel):
    completed_at: UtcDateTime
    verification_code: Optional[str] = None
    signature_url: Optional[str] = None
    package_count: Optional[int] = None


class CancellationInfo(CamelModel):
    reason: str
    notes: Optional[str] = None


class PickupStatusChangedPayload(CamelModel):
    pickup_request_id: str
    lab_id: str
    clinic_id: str
    previous_status: PickupRequestStatus
    new_status: PickupRequestStatus
    changed_by: PickupChangedBy
    route_id: Optional[str] = None
    stop_id: Optional[str] = None
    assigned_driver: Optional[AssignedDriver] = None
    arrival_info: Optional[ArrivalInfo] = None
    completion_info: Optional[PickupCompletionInfo] = None
    cancellation_info: Optional[CancellationInfo] = None


class PickupStatusChangedEvent(DomainEvent):
    event_type: Literal["logistics.pickup.status_changed"] = "logistics.pickup.status_changed"
    payload: PickupStatusChangedPayload


class StopChangedBy(CamelModel):
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None


class StopCompletionInfo(CamelModel):
    completed_at: UtcDateTime
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    photo_url: Optional[str] = None
    verification_code: Optional[str] = None
    delivered_case_ids: List[str] = Field(default_factory=list)


class RouteStopStatusChangedPayload(CamelModel):
    route_id: str
    stop_id: str
    lab_id: str
    clinic_id: str
    previous_status: StopStatus
    new_status: StopStatus
    changed_by: StopChangedBy
    stop_type: StopType
    sequence: int
    arrival_info: Optional[ArrivalInfo] = None
    completion_info: Optional[StopCompletionInfo] = None


class RouteStopStatusChangedEvent(DomainEvent):
    event_type: Literal["logistics.route_stop.status_changed"] = "logistics.route_stop.status_changed"
    payload: RouteStopStatusChangedPayload
