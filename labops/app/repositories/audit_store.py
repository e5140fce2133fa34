"""
SQLAlchemy audit store.
"""

from typing import List, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from labops.app.models.audit_log import AuditLog
from labops.app.schemas.audit import AuditEntry, AuditEntryCreate, AuditQuery


def to_audit_entry(record: AuditLog) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        timestamp=record.timestamp,
        lab_id=record.lab_id,
        actor_id=record.actor_id,
        actor_role=record.actor_role,
        action=record.action,
        severity=record.severity,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        previous_status=record.previous_status,
        new_status=record.new_status,
        correlation_id=record.correlation_id,
        metadata=record.meta_data or {},
    )


class SqlAlchemyAuditStore:
    """Audit store backed by the ``audit_logs`` table. Insert and select only."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, entry: AuditEntryCreate) -> AuditEntry:
        record = AuditLog(
            timestamp=entry.timestamp,
            lab_id=entry.lab_id,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            action=entry.action,
            severity=entry.severity,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            correlation_id=entry.correlation_id,
            meta_data=entry.metadata,
        )
        self.db.add(record)
        await self.db.flush()
        return to_audit_entry(record)

    async def query(self, lab_id: Optional[str], filters: AuditQuery) -> List[AuditEntry]:
        """
        Retrieve audit entries with optional filtering.
        
        Returns:
            Entries for ``lab_id``, most recent first
        """
        query = select(AuditLog).where(AuditLog.lab_id == lab_id)
        
        if filters.entity_type:
            query = query.where(AuditLog.entity_type == filters.entity_type)
        if filters.entity_id:
            query = query.where(AuditLog.entity_id == filters.entity_id)
        if filters.actor_id:
            query = query.where(AuditLog.actor_id == filters.actor_id)
        if filters.action:
            query = query.where(AuditLog.action == filters.action)
        if filters.severity:
            query = query.where(AuditLog.severity == filters.severity)
        if filters.correlation_id:
            query = query.where(AuditLog.correlation_id == filters.correlation_id)
        if filters.since:
            query = query.where(AuditLog.timestamp >= filters.since)
        if filters.until:
            query = query.where(AuditLog.timestamp <= filters.until)
        
        query = query.order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
        if filters.limit:
            query = query.limit(filters.limit)
        
        result = await self.db.execute(query)
        return [to_audit_entry(record) for record in result.scalars().all()]
