"""
Route stop database model.

Stops are pickup or delivery points of a route. Sequence is unique per route.
"""

import uuid

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, JSON, UniqueConstraint
from labops.app.db.session import Base
from labops.app.models.logistics_enums import StopStatus, StopType


class RouteStopRecord(Base):
    """
    Route stop model.
    
    Completed stops are immutable; corrections go to the audit trail.
    """
    __tablename__ = "route_stops"
    
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    
    # Route reference
    route_id = Column(String(64), ForeignKey("routes.id"), nullable=False, index=True)
    lab_id = Column(String(64), nullable=False, index=True)
    clinic_id = Column(String(64), nullable=False)
    
    # Stop details
    type = Column(Enum(StopType), nullable=False)  # PICKUP or DELIVERY
    sequence = Column(Integer, nullable=False)  # Order in route (1, 2, 3, ...)
    status = Column(Enum(StopStatus), default=StopStatus.PENDING, nullable=False)
    
    # Clinic registered location
    clinic_geo_hash = Column(String(12), nullable=True)
    clinic_address = Column(String(500), nullable=True)
    
    # Timing
    estimated_arrival = Column(DateTime(timezone=True), nullable=True)
    actual_arrival = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    
    # Proof of service
    geo_hash = Column(String(12), nullable=True)
    geo_hash_at_completion = Column(String(12), nullable=True)
    signature_url = Column(String(1000), nullable=True)
    signed_by = Column(String(200), nullable=True)
    photo_url = Column(String(1000), nullable=True)
    verification_code = Column(String(6), nullable=True)
    skip_reason = Column(String(500), nullable=True)
    
    # Cases delivered at (or collected from) this stop
    case_ids = Column(JSON, nullable=False, default=list)
    pickup_request_id = Column(String(64), nullable=True)
    
    __table_args__ = (
        UniqueConstraint("route_id", "sequence", name="uq_route_stops_route_sequence"),
    )
    
    def __repr__(self):
        return f"<RouteStopRecord(id={self.id}, route_id={self.route_id}, type='{self.type.value}', seq={self.sequence})>"
