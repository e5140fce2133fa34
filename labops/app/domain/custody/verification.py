"""
Custody verification.

Handoff confirmation codes, delivery location checks and chain completeness.
"""

import hashlib
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence, Union

from labops.app.core.clock import isoformat, parse_datetime
from labops.app.domain.geo.validator import DEFAULT_TOLERANCE_METERS, within_tolerance
from labops.app.models.custody_enums import CustodyEventType
from labops.app.schemas.custody import ChainVerification, LocationValidation

Timestamp = Union[str, datetime]

MISSING_LAB_DEPARTURE = "Lab departure event"
MISSING_CLINIC_ARRIVAL = "Clinic arrival event"
NO_EVENTS = "No custody events recorded"


def _timestamp_key(timestamp: Timestamp) -> str:
    if isinstance(timestamp, datetime):
        return isoformat(timestamp)
    return str(timestamp)


def generate_verification_code(case_id: str, timestamp: Timestamp) -> str:
    """
    Derive a 6-digit handoff code from the case id and a timestamp.
    
    Deterministic, so the code can be regenerated for comparison instead of
    being stored. It is a low-friction confirmation code, not a credential.
    """
    digest = hashlib.sha256(f"{case_id}-{_timestamp_key(timestamp)}".encode("utf-8")).digest()
    return f"{int.from_bytes(digest[:8], 'big') % 1_000_000:06d}"


def validate_verification_code(case_id: str, timestamp: Timestamp, code: Optional[str]) -> bool:
    return code is not None and str(code) == generate_verification_code(case_id, timestamp)


def validate_delivery_location(
    delivery_geo_hash: Optional[str],
    clinic_geo_hash: Optional[str],
    tolerance_meters: float = DEFAULT_TOLERANCE_METERS,
) -> LocationValidation:
    """
    Compare where a delivery happened with the clinic's registered location.
    
    Returns:
        LocationValidation; error explains why the location is invalid
    """
    if not delivery_geo_hash or not clinic_geo_hash:
        return LocationValidation(valid=False, tolerance_meters=tolerance_meters, error="Missing geohash data")
    
    try:
        valid, distance_meters = within_tolerance(delivery_geo_hash, clinic_geo_hash, tolerance_meters)
    except ValueError as exc:
        return LocationValidation(valid=False, tolerance_meters=tolerance_meters, error=f"Validation error: {exc}")
    
    return LocationValidation(
        valid=valid,
        distance_meters=distance_meters,
        tolerance_meters=tolerance_meters,
        error=None if valid else "Delivery location does not match clinic address",
    )


def _get(event: Any, name: str) -> Any:
    if isinstance(event, Mapping):
        return event.get(name)
    return getattr(event, name, None)


def _has_verification(event: Any) -> bool:
    verification = _get(event, "verification")
    if verification is None:
        return False
    return bool(_get(verification, "method"))


def verify_chain(events: Sequence[Any]) -> ChainVerification:
    """
    Check a case's custody chain for completeness.
    
    Complete requires at least one LabDeparture and one ClinicArrival, events
    in chronological order, and verification metadata on every event.
    
    Args:
        events: Custody events in recorded order (models or mappings)
    """
    if not events:
        return ChainVerification(complete=False, missing=[NO_EVENTS], errors=[], event_count=0)
    
    errors = []
    types = set()
    for index, event in enumerate(events):
        raw_type = _get(event, "type")
        try:
            types.add(CustodyEventType(raw_type))
        except ValueError:
            errors.append(f"Event {index} has unknown type {raw_type!r}")
    
    missing = []
    if CustodyEventType.LAB_DEPARTURE not in types:
        missing.append(MISSING_LAB_DEPARTURE)
    if CustodyEventType.CLINIC_ARRIVAL not in types:
        missing.append(MISSING_CLINIC_ARRIVAL)
    
    for index in range(1, len(events)):
        previous = parse_datetime(_get(events[index - 1], "timestamp"))
        current = parse_datetime(_get(events[index], "timestamp"))
        if previous is not None and current is not None and current < previous:
            errors.append(f"Event {index} timestamp before previous event")
    
    for index, event in enumerate(events):
        if not _has_verification(event):
            errors.append(f"Event {index} missing verification")
    
    return ChainVerification(
        complete=not missing and not errors,
        missing=missing,
        errors=errors,
        event_count=len(events),
    )
