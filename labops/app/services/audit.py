"""
Audit trail service.

Structured, append-only record of every state change and security-relevant
action. Entries from one unit of work share a correlation ID.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from labops.app.core.clock import utcnow
from labops.app.core.config import settings
from labops.app.core.exceptions import ErrorKind, GovernanceError, GovernanceException, access_denied
from labops.app.core.guards import filter_to_tenant
from labops.app.core.tenant_context import TenantContext
from labops.app.models.custody_enums import CustodyEventType
from labops.app.models.enums import AuditSeverity
from labops.app.repositories.base import AuditStore
from labops.app.schemas.audit import AuditEntry, AuditEntryCreate, AuditQuery, ComplianceSummary
from labops.app.schemas.custody import CustodyEvent, LocationValidation

logger = logging.getLogger(__name__)


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    PICKUP_STATUS_CHANGED = "PICKUP_STATUS_CHANGED"
    STOP_STATUS_CHANGED = "STOP_STATUS_CHANGED"
    ROUTE_STATUS_CHANGED = "ROUTE_STATUS_CHANGED"
    CASE_UPDATED = "CASE_UPDATED"
    
    # Custody
    CUSTODY_EVENT_RECORDED = "CUSTODY_EVENT_RECORDED"
    CUSTODY_EXCEPTION_RECORDED = "CUSTODY_EXCEPTION_RECORDED"
    CUSTODY_LOCATION_FLAGGED = "CUSTODY_LOCATION_FLAGGED"
    
    # Security
    ACCESS_DENIED = "ACCESS_DENIED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    
    # Inbound integrations
    PICKUP_REQUEST_RECEIVED = "PICKUP_REQUEST_RECEIVED"
    WEBHOOK_REJECTED = "WEBHOOK_REJECTED"


TRANSITION_ACTIONS = {
    "pickup": AuditAction.PICKUP_STATUS_CHANGED,
    "stop": AuditAction.STOP_STATUS_CHANGED,
    "route": AuditAction.ROUTE_STATUS_CHANGED,
}

SECURITY_ACTIONS = {
    ErrorKind.ACCESS_DENIED: AuditAction.ACCESS_DENIED,
    ErrorKind.CONCURRENCY_CONFLICT: AuditAction.CONCURRENCY_CONFLICT,
    ErrorKind.INVALID_SIGNATURE: AuditAction.WEBHOOK_REJECTED,
    ErrorKind.INVALID_CONTEXT: AuditAction.ACCESS_DENIED,
}


def _value(status: Any) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", str(status))


class AuditTrail:
    """
    Append and query audit entries.
    
    Append-only: no update or delete operation is exposed.
    """

    def __init__(self, store: AuditStore):
        self.store = store

    async def log_event(
        self,
        action: str,
        context: Optional[TenantContext] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        previous_status: Any = None,
        new_status: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEntry:
        """
        Append one audit entry.
        
        Args:
            action: Action being recorded (use AuditAction constants)
            context: Tenant context of the request; None for unresolved requests
            severity: INFO, SECURITY or CRITICAL
            entity_type: Affected entity kind
            entity_id: Affected entity ID
            previous_status: Status before the change
            new_status: Status after the change
            metadata: Additional context as JSON
            correlation_id: Defaults to the context's correlation ID
            timestamp: Defaults to now
            
        Returns:
            Stored AuditEntry
        """
        entry = AuditEntryCreate(
            timestamp=timestamp or utcnow(),
            lab_id=context.lab_id if context else None,
            actor_id=context.user_id if context else None,
            actor_role=context.role_id if context else None,
            action=action,
            severity=severity,
            entity_type=_value(entity_type),
            entity_id=str(entity_id) if entity_id is not None else None,
            previous_status=_value(previous_status),
            new_status=_value(new_status),
            correlation_id=correlation_id or (context.correlation_id if context else None),
            metadata=metadata or {},
        )
        if severity != AuditSeverity.INFO:
            logger.warning(
                "Security Audit Event",
                extra={
                    "action": action,
                    "severity": severity.value,
                    "lab_id": entry.lab_id,
                    "entity_type": entity_type,
                    "entity_id": entry.entity_id,
                    "correlation_id": entry.correlation_id,
                },
            )
        return await self.store.append(entry)

    async def record_transition(
        self,
        context: TenantContext,
        entity_type: str,
        entity_id: str,
        previous_status: Any,
        new_status: Any,
        warnings: Sequence[GovernanceError] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Record an accepted status change; advisories raise it to SECURITY."""
        entity_type = _value(entity_type)
        meta = dict(metadata or {})
        if warnings:
            meta["warnings"] = [warning.to_dict() for warning in warnings]
        return await self.log_event(
            TRANSITION_ACTIONS.get(entity_type, f"{entity_type.upper()}_STATUS_CHANGED"),
            context,
            severity=AuditSeverity.SECURITY if warnings else AuditSeverity.INFO,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_status=previous_status,
            new_status=new_status,
            metadata=meta,
        )

    async def record_custody_event(self, context: TenantContext, event: CustodyEvent) -> AuditEntry:
        if event.type == CustodyEventType.EXCEPTION:
            action, severity = AuditAction.CUSTODY_EXCEPTION_RECORDED, AuditSeverity.CRITICAL
        else:
            action, severity = AuditAction.CUSTODY_EVENT_RECORDED, AuditSeverity.INFO
        return await self.log_event(
            action,
            context,
            severity=severity,
            entity_type="case",
            entity_id=event.case_id,
            new_status=event.type,
            metadata={
                "custody_event_id": event.id,
                "sequence": event.sequence,
                "actor_id": event.actor.id,
                "geo_hash": event.location.geo_hash,
                "location_flagged": event.location_flagged,
            },
            correlation_id=event.correlation_id,
        )

    async def record_location_flag(
        self,
        context: TenantContext,
        entity_type: str,
        entity_id: str,
        validation: LocationValidation,
    ) -> AuditEntry:
        """Out-of-tolerance location, recorded for review rather than blocked."""
        return await self.log_event(
            AuditAction.CUSTODY_LOCATION_FLAGGED,
            context,
            severity=AuditSeverity.SECURITY,
            entity_type=_value(entity_type),
            entity_id=entity_id,
            metadata=validation.model_dump(),
        )

    async def record_security_error(
        self,
        context: Optional[TenantContext],
        error: GovernanceError,
        correlation_id: Optional[str] = None,
    ) -> AuditEntry:
        """Access denials, version conflicts and rejected credentials."""
        return await self.log_event(
            SECURITY_ACTIONS.get(error.kind, error.kind.value),
            context,
            severity=AuditSeverity.SECURITY,
            entity_type=error.entity_type,
            entity_id=error.entity_id,
            metadata=error.to_dict(),
            correlation_id=correlation_id,
        )

    async def record_case_update(
        self,
        context: TenantContext,
        case_id: str,
        previous_version: int,
        new_version: int,
        changes: Dict[str, Any],
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> AuditEntry:
        return await self.log_event(
            AuditAction.CASE_UPDATED,
            context,
            entity_type="case",
            entity_id=case_id,
            previous_status=previous_status,
            new_status=new_status,
            metadata={
                "previous_version": previous_version,
                "new_version": new_version,
                "changed_fields": sorted(changes),
            },
        )

    # Read side

    async def query(self, context: Optional[TenantContext], filters: Optional[AuditQuery] = None) -> List[AuditEntry]:
        """
        Retrieve audit entries for the context's lab, most recent first.
        
        Raises:
            GovernanceException: ACCESS_DENIED without a tenant context
        """
        if context is None:
            raise GovernanceException(access_denied(None, None, entity_type="audit_log"))
        filters = filters or AuditQuery()
        if filters.limit is None:
            filters = filters.model_copy(update={"limit": settings.audit_query_limit})
        entries = await self.store.query(context.lab_id, filters)
        return filter_to_tenant(entries, context)

    async def get_entity_history(self, context: TenantContext, entity_type: str, entity_id: str) -> List[AuditEntry]:
        return await self.query(context, AuditQuery(entity_type=entity_type, entity_id=entity_id))

    async def get_actor_activity(self, context: TenantContext, actor_id: str) -> List[AuditEntry]:
        return await self.query(context, AuditQuery(actor_id=actor_id))

    async def get_events_in_range(self, context: TenantContext, since: datetime, until: datetime) -> List[AuditEntry]:
        return await self.query(context, AuditQuery(since=since, until=until))

    async def get_by_severity(self, context: TenantContext, severity: AuditSeverity) -> List[AuditEntry]:
        return await self.query(context, AuditQuery(severity=severity))

    async def get_correlated(self, context: TenantContext, correlation_id: str) -> List[AuditEntry]:
        return await self.query(context, AuditQuery(correlation_id=correlation_id))

    async def compliance_summary(self, context: TenantContext, since: datetime, until: datetime) -> ComplianceSummary:
        """
        Count the lab's audit activity between ``since`` and ``until``.
        
        Every entry in the period is counted; the read-side page limit does
        not apply. The period is non-compliant when it holds any CRITICAL
        entry (custody exceptions).
        
        Raises:
            GovernanceException: ACCESS_DENIED without a tenant context
        """
        if context is None:
            raise GovernanceException(access_denied(None, None, entity_type="audit_log"))
        entries = filter_to_tenant(
            await self.store.query(context.lab_id, AuditQuery(since=since, until=until)),
            context,
        )
        by_severity = Counter(entry.severity.value for entry in entries)
        by_action = Counter(entry.action for entry in entries)
        return ComplianceSummary(
            lab_id=context.lab_id,
            since=since,
            until=until,
            total_events=len(entries),
            custody_events=sum(count for action, count in by_action.items() if action.startswith("CUSTODY_")),
            security_events=len(entries) - by_severity[AuditSeverity.INFO.value],
            critical_events=by_severity[AuditSeverity.CRITICAL.value],
            by_severity=dict(by_severity),
            by_action=dict(by_action),
            compliant=by_severity[AuditSeverity.CRITICAL.value] == 0,
        )
