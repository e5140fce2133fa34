"""
Lab case database model.

Cases are the version-controlled aggregate: every accepted update must name
the version it read and bumps ``version`` by exactly one.
"""

import uuid

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from labops.app.db.session import Base


class LabCase(Base):
    """
    Lab case model.
    
    Holds the mutable case attributes plus the optimistic-lock counter.
    """
    __tablename__ = "lab_cases"
    
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    
    # Tenant
    lab_id = Column(String(64), nullable=False, index=True)
    clinic_id = Column(String(64), nullable=True, index=True)
    
    # Case details
    case_number = Column(String(100), nullable=True)
    patient_name = Column(String(200), nullable=True)
    status = Column(String(50), nullable=False, default="Received")
    unit_ids = Column(JSON, nullable=False, default=list)
    attributes = Column(JSON, nullable=False, default=dict)
    
    # Optimistic lock, starts at 0
    version = Column(Integer, nullable=False, default=0)
    updated_by = Column(String(64), nullable=True)
    
    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    
    def __repr__(self):
        return f"<LabCase(id={self.id}, lab_id={self.lab_id}, status='{self.status}', version={self.version})>"
