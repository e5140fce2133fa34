"""
Logistics schemas.

Read models for pickup requests, stops and routes (validated straight from
ORM rows), plus the value objects used by entity validation.
"""

import datetime as dt
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from labops.app.core.clock import UtcDateTime
from labops.app.models.logistics_enums import PickupRequestStatus, RouteStatus, StopStatus, StopType


class TimeWindow(BaseModel):
    start: UtcDateTime
    end: UtcDateTime


class PackageSpecs(BaseModel):
    """Physical package description supplied by the clinic."""
    weight: Optional[float] = None  # kg
    dimensions: Optional[Dict[str, float]] = None
    temperature_controlled: bool = False
    fragile: bool = False


class PickupRequestDraft(BaseModel):
    """
    Pickup request as received from CRM, EHR or manual entry.
    
    Not yet validated against business rules; see validate_pickup_request.
    """
    lab_id: Optional[str] = None
    clinic_id: Optional[str] = None
    window_start: Optional[UtcDateTime] = None
    window_end: Optional[UtcDateTime] = None
    package_count: Optional[int] = None
    package_specs: Optional[PackageSpecs] = None
    associated_case_ids: List[str] = Field(default_factory=list)
    is_rush: bool = False
    notes: Optional[str] = None
    source: str = "manual"
    external_reference: Optional[str] = None
    requested_by: Optional[Dict[str, Any]] = None
    patient_id: Optional[str] = None


class PickupRequest(BaseModel):
    """Pickup request read model."""
    id: str
    lab_id: str
    clinic_id: str
    window_start: UtcDateTime
    window_end: UtcDateTime
    status: PickupRequestStatus
    driver_id: Optional[str] = None
    route_id: Optional[str] = None
    stop_id: Optional[str] = None
    package_count: int
    package_specs: Optional[PackageSpecs] = None
    associated_case_ids: List[str] = Field(default_factory=list)
    verification_code: Optional[str] = None
    actual_arrival: Optional[UtcDateTime] = None
    completed_at: Optional[UtcDateTime] = None
    source: str = "manual"
    external_reference: Optional[str] = None
    is_rush: bool = False
    notes: Optional[str] = None
    patient_id: Optional[str] = None

    class Config:
        from_attributes = True


class RouteStop(BaseModel):
    """Route stop read model."""
    id: Optional[str] = None
    route_id: Optional[str] = None
    lab_id: Optional[str] = None
    clinic_id: Optional[str] = None
    type: Optional[StopType] = None
    sequence: Optional[int] = None
    status: StopStatus = StopStatus.PENDING
    clinic_geo_hash: Optional[str] = None
    estimated_arrival: Optional[UtcDateTime] = None
    actual_arrival: Optional[UtcDateTime] = None
    completed_at: Optional[UtcDateTime] = None
    geo_hash: Optional[str] = None
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    photo_url: Optional[str] = None
    verification_code: Optional[str] = None
    case_ids: List[str] = Field(default_factory=list)
    pickup_request_id: Optional[str] = None

    class Config:
        from_attributes = True


class Route(BaseModel):
    """Route read model with its ordered stops."""
    id: Optional[str] = None
    lab_id: Optional[str] = None
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    date: Optional[dt.date] = None
    status: RouteStatus = RouteStatus.SCHEDULED
    start_time: Optional[UtcDateTime] = None
    end_time: Optional[UtcDateTime] = None
    stops: List[RouteStop] = Field(default_factory=list)
    version: int = 0

    class Config:
        from_attributes = True


class ValidationReport(BaseModel):
    """Collected business-rule violations; valid when errors is empty."""
    valid: bool
    errors: List[str] = Field(default_factory=list)


class Eligibility(BaseModel):
    """Yes/no answer with the blocking reason."""
    allowed: bool
    reason: Optional[str] = None


class SlaCompliance(BaseModel):
    compliant: bool
    variance_minutes: int


class RouteEfficiency(BaseModel):
    completion_rate: float  # percent of stops completed
    on_time_rate: float  # percent of completed stops within the grace period
    average_stop_time_min: int
