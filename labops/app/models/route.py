"""
Route database model.

A route is one driver/vehicle run over an ordered list of stops.
"""

import uuid

from sqlalchemy import Column, Integer, String, DateTime, Date, Enum, JSON
from sqlalchemy.sql import func
from labops.app.db.session import Base
from labops.app.models.logistics_enums import RouteStatus


class Route(Base):
    """
    Route model.
    
    Stop changes commit through the route's version, so two drivers editing
    the same route cannot silently overwrite each other.
    """
    __tablename__ = "routes"
    
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    lab_id = Column(String(64), nullable=False, index=True)
    
    # Assignment
    driver_id = Column(String(64), nullable=True, index=True)
    driver_name = Column(String(200), nullable=True)
    vehicle_id = Column(String(64), nullable=True)
    date = Column(Date, nullable=False)
    
    # Lifecycle
    status = Column(Enum(RouteStatus), default=RouteStatus.SCHEDULED, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    
    # Lab origin, used for departure custody events
    origin_geo_hash = Column(String(12), nullable=True)
    origin_address = Column(String(500), nullable=True)
    
    metrics = Column(JSON, nullable=False, default=dict)
    
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Route(id={self.id}, lab_id={self.lab_id}, status='{self.status.value}', version={self.version})>"
