"""
Chain-of-custody schemas.
"""

from pydantic import BaseModel, Field
from labops.app.core.clock import UtcDateTime
from typing import Any, Dict, List, Optional

from labops.app.models.custody_enums import CustodyEventType, VerificationMethod


class Coordinates(BaseModel):
    """WGS84 point."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Actor(BaseModel):
    """Person or system taking custody."""
    id: str
    name: Optional[str] = None
    role: Optional[str] = None  # Driver, LabTech, ClinicStaff, System


class Location(BaseModel):
    """Where a handoff happened. geo_hash is derived from coordinates when present."""
    coordinates: Optional[Coordinates] = None
    address: Optional[str] = None
    geo_hash: Optional[str] = None


class Verification(BaseModel):
    """Proof attached to a handoff."""
    method: Optional[VerificationMethod] = None
    proof_url: Optional[str] = None
    verification_code: Optional[str] = None
    timestamp: Optional[UtcDateTime] = None


class NewCustodyEvent(BaseModel):
    """Event as handed to a custody store; the store assigns id and sequence."""
    lab_id: str
    case_id: str
    type: CustodyEventType
    timestamp: UtcDateTime
    actor: Actor
    location: Location
    verification: Optional[Verification] = None
    notes: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    location_flagged: bool = False
    correlation_id: Optional[str] = None


class CustodyEvent(NewCustodyEvent):
    """Recorded, immutable custody event."""
    id: str
    sequence: int

    class Config:
        frozen = True


class LocationValidation(BaseModel):
    """Outcome of comparing a delivery location with the clinic's registered one."""
    valid: bool
    distance_meters: Optional[float] = None
    tolerance_meters: float
    error: Optional[str] = None


class ChainVerification(BaseModel):
    """Completeness report for a case's custody chain."""
    complete: bool
    missing: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    event_count: int = 0


class CurrentHolder(BaseModel):
    """Who holds a case according to its latest custody event."""
    actor_id: str
    actor_name: Optional[str] = None
    actor_role: Optional[str] = None
    since: UtcDateTime
    location: Location
