"""
Pickup request database model.
"""

import uuid

from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, JSON, Boolean
from sqlalchemy.sql import func
from labops.app.db.session import Base
from labops.app.models.logistics_enums import PickupRequestStatus


class PickupRequestRecord(Base):
    """
    Pickup request model.
    
    Status updates are compare-and-set on the status that was read.
    """
    __tablename__ = "pickup_requests"
    
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    lab_id = Column(String(64), nullable=False, index=True)
    clinic_id = Column(String(64), nullable=False, index=True)
    
    # Requested window
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    
    status = Column(Enum(PickupRequestStatus), default=PickupRequestStatus.PENDING, nullable=False)
    
    # Assignment
    driver_id = Column(String(64), nullable=True)
    route_id = Column(String(64), nullable=True, index=True)
    stop_id = Column(String(64), nullable=True)
    
    # Packages
    package_count = Column(Integer, nullable=False, default=1)
    package_specs = Column(JSON, nullable=True)
    associated_case_ids = Column(JSON, nullable=False, default=list)
    is_rush = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    patient_id = Column(String(64), nullable=True)
    
    # Service
    verification_code = Column(String(6), nullable=True)
    actual_arrival = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    geo_hash = Column(String(12), nullable=True)
    signature_url = Column(String(1000), nullable=True)
    
    # Exception reasons
    skip_reason = Column(String(500), nullable=True)
    reschedule_reason = Column(String(500), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    
    # Origin of the request: CRM, EHR system name, or manual
    source = Column(String(50), nullable=False, default="manual")
    external_reference = Column(String(200), nullable=True)
    requested_by = Column(JSON, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    
    def __repr__(self):
        return f"<PickupRequestRecord(id={self.id}, lab_id={self.lab_id}, status='{self.status.value}')>"
