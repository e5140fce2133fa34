"""
Audit Log Database Model.

Append-only record of state changes and security-relevant actions.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON
from labops.app.db.session import Base
from labops.app.models.enums import AuditSeverity


class AuditLog(Base):
    """
    Audit log model.
    
    Events logged:
    - PICKUP/STOP/ROUTE status transitions
    - CASE_UPDATED
    - CUSTODY_EVENT_RECORDED / CUSTODY_LOCATION_FLAGGED
    - ACCESS_DENIED / CONCURRENCY_CONFLICT (SECURITY)
    - CUSTODY_EXCEPTION_RECORDED (CRITICAL)
    """
    __tablename__ = "audit_logs"
    
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    
    # Tenant; null when the context could not be resolved
    lab_id = Column(String(64), nullable=True, index=True)
    
    # Who performed the action (None for system actions)
    actor_id = Column(String(64), nullable=True, index=True)
    actor_role = Column(String(64), nullable=True)
    
    # What action was performed
    action = Column(String(100), nullable=False, index=True)
    severity = Column(Enum(AuditSeverity), default=AuditSeverity.INFO, nullable=False, index=True)
    
    # Which entity was affected
    entity_type = Column(String(50), nullable=True, index=True)
    entity_id = Column(String(64), nullable=True, index=True)
    previous_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=True)
    
    # Links cross-component events of one unit of work
    correlation_id = Column(String(64), nullable=True, index=True)
    
    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)
    
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    
    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', entity={self.entity_type}:{self.entity_id})>"
