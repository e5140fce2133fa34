"""
Logistics business-rule validation.

Entity-level checks that complement the per-transition requirements:
creation-time validation of pickup requests, stops and routes, route
start/completion eligibility, time-window arithmetic, SLA compliance and
route efficiency metrics.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

from labops.app.core.clock import ensure_utc, utcnow
from labops.app.core.config import settings
from labops.app.schemas.logistics import (
    Eligibility,
    PickupRequestDraft,
    Route,
    RouteEfficiency,
    RouteStop,
    SlaCompliance,
    TimeWindow,
    ValidationReport,
)
from labops.app.models.logistics_enums import StopStatus, StopType

DEFAULT_PICKUP_SERVICE_MINUTES = 10


# Time windows

def is_valid_time_window(window: TimeWindow, now: Optional[datetime] = None) -> Eligibility:
    """A window is valid when start < end and it has not already closed."""
    now = now or utcnow()
    if window.start >= window.end:
        return Eligibility(allowed=False, reason="Window start must be before window end")
    if window.end < now:
        return Eligibility(allowed=False, reason="Window end must be in the future")
    return Eligibility(allowed=True)


def do_time_windows_overlap(first: TimeWindow, second: TimeWindow) -> bool:
    return first.start < second.end and second.start < first.end


def is_within_time_window(timestamp: datetime, window: TimeWindow) -> bool:
    timestamp = ensure_utc(timestamp)
    return window.start <= timestamp <= window.end


def time_window_duration_minutes(window: TimeWindow) -> int:
    return math.floor((window.end - window.start).total_seconds() / 60)


def can_complete_pickup_in_window(
    current_time: datetime,
    window: TimeWindow,
    travel_time_min: float,
    service_time_min: float = DEFAULT_PICKUP_SERVICE_MINUTES,
) -> Eligibility:
    """
    Check whether a driver leaving now can finish the pickup before the window closes.
    
    Args:
        current_time: Departure time
        window: Pickup window
        travel_time_min: Estimated travel time to the clinic
        service_time_min: Time spent on site
    
    Returns:
        Eligibility; the reason names the estimated completion when it is too late
    """
    estimated_arrival = ensure_utc(current_time) + timedelta(minutes=travel_time_min)
    estimated_completion = estimated_arrival + timedelta(minutes=service_time_min)
    if estimated_completion > window.end:
        return Eligibility(
            allowed=False,
            reason=(
                f"Cannot complete before window closes at {window.end.isoformat()}. "
                f"Estimated completion: {estimated_completion.isoformat()}"
            ),
        )
    return Eligibility(allowed=True)


# Entities

def validate_pickup_request(pickup: PickupRequestDraft, now: Optional[datetime] = None) -> ValidationReport:
    """Creation-time validation of a pickup request; collects every violation."""
    errors = []
    
    if not pickup.clinic_id:
        errors.append("clinicId is required")
    if not pickup.lab_id:
        errors.append("labId is required")
    if not pickup.window_start:
        errors.append("windowStart is required")
    if not pickup.window_end:
        errors.append("windowEnd is required")
    if not pickup.package_count or pickup.package_count <= 0:
        errors.append("packageCount must be greater than 0")
    
    if pickup.window_start and pickup.window_end:
        window_check = is_valid_time_window(TimeWindow(start=pickup.window_start, end=pickup.window_end), now)
        if not window_check.allowed:
            errors.append(window_check.reason)
    
    if pickup.package_specs and pickup.package_specs.weight is not None and pickup.package_specs.weight <= 0:
        errors.append("Package weight must be greater than 0")
    
    return ValidationReport(valid=not errors, errors=errors)


def validate_route_stop(stop: RouteStop, latitude: Optional[float] = None, longitude: Optional[float] = None) -> ValidationReport:
    """Creation-time validation of a route stop."""
    errors = []
    
    if not stop.clinic_id:
        errors.append("clinicId is required")
    if not stop.type:
        errors.append("type is required")
    if stop.sequence is None or stop.sequence < 0:
        errors.append("sequence must be >= 0")
    
    if latitude is not None and not -90 <= latitude <= 90:
        errors.append("latitude must be between -90 and 90")
    if longitude is not None and not -180 <= longitude <= 180:
        errors.append("longitude must be between -180 and 180")
    
    # A stop must carry something to deliver or collect
    if stop.type == StopType.DELIVERY and not stop.case_ids:
        errors.append("Delivery stops must have at least one delivery item")
    if stop.type == StopType.PICKUP and not stop.pickup_request_id:
        errors.append("Pickup stops must have at least one pickup task")
    
    return ValidationReport(valid=not errors, errors=errors)


def validate_route(route: Route) -> ValidationReport:
    """Creation-time validation of a route; stop sequences must be unique."""
    errors = []
    
    if not route.lab_id:
        errors.append("labId is required")
    if not route.date:
        errors.append("date is required")
    if not route.stops:
        errors.append("Route must have at least one stop")
    
    sequences = [stop.sequence for stop in route.stops]
    if len(sequences) != len(set(sequences)):
        errors.append("Stop sequences must be unique")
    
    return ValidationReport(valid=not errors, errors=errors)


def can_start_route(route: Route) -> Eligibility:
    if not route.driver_id:
        return Eligibility(allowed=False, reason="No driver assigned")
    if not route.vehicle_id:
        return Eligibility(allowed=False, reason="No vehicle assigned")
    if not route.stops:
        return Eligibility(allowed=False, reason="No stops in route")
    if not any(stop.status == StopStatus.PENDING for stop in route.stops):
        return Eligibility(allowed=False, reason="No pending stops")
    return Eligibility(allowed=True)


def can_complete_route(route: Route) -> Eligibility:
    open_stops = [
        stop for stop in route.stops
        if stop.status not in (StopStatus.COMPLETED, StopStatus.SKIPPED)
    ]
    if open_stops:
        return Eligibility(allowed=False, reason=f"{len(open_stops)} stop(s) not completed or skipped")
    return Eligibility(allowed=True)


# Service metrics

def calculate_sla_compliance(
    expected_arrival: datetime,
    actual_arrival: Optional[datetime],
    grace_minutes: Optional[int] = None,
) -> SlaCompliance:
    """
    SLA compliance for a pickup or delivery.
    
    Variance is whole minutes late (negative when early); compliant while the
    variance stays within the grace period. A missing arrival is non-compliant.
    """
    if actual_arrival is None:
        return SlaCompliance(compliant=False, variance_minutes=0)
    
    grace = settings.sla_grace_minutes if grace_minutes is None else grace_minutes
    variance_seconds = (ensure_utc(actual_arrival) - ensure_utc(expected_arrival)).total_seconds()
    variance_minutes = math.floor(variance_seconds / 60)
    return SlaCompliance(compliant=variance_minutes <= grace, variance_minutes=variance_minutes)


def calculate_route_efficiency(route: Route, grace_minutes: Optional[int] = None) -> RouteEfficiency:
    """Completion rate, on-time rate and average time on site for a route."""
    grace = settings.sla_grace_minutes if grace_minutes is None else grace_minutes
    total = len(route.stops)
    completed = [stop for stop in route.stops if stop.status == StopStatus.COMPLETED]
    
    completion_rate = (len(completed) / total) * 100 if total else 0.0
    
    on_time = [
        stop for stop in completed
        if stop.estimated_arrival and stop.actual_arrival
        and stop.actual_arrival - stop.estimated_arrival <= timedelta(minutes=grace)
    ]
    on_time_rate = (len(on_time) / len(completed)) * 100 if completed else 0.0
    
    durations = [
        (stop.completed_at - stop.actual_arrival).total_seconds()
        for stop in completed
        if stop.actual_arrival and stop.completed_at
    ]
    average_stop_time_min = math.floor(sum(durations) / len(durations) / 60) if durations else 0
    
    return RouteEfficiency(
        completion_rate=completion_rate,
        on_time_rate=on_time_rate,
        average_stop_time_min=average_stop_time_min,
    )
