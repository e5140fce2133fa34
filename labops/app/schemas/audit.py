"""
Audit trail schemas.
"""

from pydantic import BaseModel, Field
from labops.app.core.clock import UtcDateTime
from typing import Any, Dict, Optional

from labops.app.models.enums import AuditSeverity


class AuditEntryCreate(BaseModel):
    """Audit event as appended to the trail."""
    timestamp: UtcDateTime
    lab_id: Optional[str] = None
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    action: str
    severity: AuditSeverity = AuditSeverity.INFO
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditEntry(AuditEntryCreate):
    """Stored audit event."""
    id: int


class AuditQuery(BaseModel):
    """Read-side filters; all optional and combined with AND."""
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    action: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    correlation_id: Optional[str] = None
    since: Optional[UtcDateTime] = None
    until: Optional[UtcDateTime] = None
    limit: Optional[int] = Field(None, gt=0)


class ComplianceSummary(BaseModel):
    """Audit activity over a period, counted for compliance review."""
    lab_id: str
    since: UtcDateTime
    until: UtcDateTime
    total_events: int = 0
    custody_events: int = 0
    security_events: int = 0
    critical_events: int = 0
    by_severity: Dict[str, int] = Field(default_factory=dict)
    by_action: Dict[str, int] = Field(default_factory=dict)
    compliant: bool = True
