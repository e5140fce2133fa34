"""
SQLAlchemy custody event store.

Append-only. Each append takes the next per-case sequence number; the unique
(case_id, sequence) constraint turns a lost race into an IntegrityError that
is retried with a fresh sequence. Appends for different cases never contend.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from labops.app.core.config import settings
from labops.app.core.exceptions import GovernanceException, concurrency_error
from labops.app.models.custody_event import CustodyEventRecord
from labops.app.schemas.custody import CustodyEvent, NewCustodyEvent

logger = logging.getLogger(__name__)


def to_custody_event(record: CustodyEventRecord) -> CustodyEvent:
    return CustodyEvent(
        id=record.id,
        sequence=record.sequence,
        lab_id=record.lab_id,
        case_id=record.case_id,
        type=record.type,
        timestamp=record.timestamp,
        actor=record.actor,
        location=record.location,
        verification=record.verification,
        notes=record.notes or "",
        metadata=record.meta_data or {},
        location_flagged=record.location_flagged,
        correlation_id=record.correlation_id,
    )


class SqlAlchemyCustodyEventStore:
    """Custody event store backed by the ``custody_events`` table."""

    def __init__(self, db: AsyncSession, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.custody_append_max_retries

    async def _last_sequence(self, case_id: str) -> int:
        result = await self.db.execute(
            select(func.max(CustodyEventRecord.sequence)).where(CustodyEventRecord.case_id == case_id)
        )
        return result.scalar() or 0

    async def append(self, event: NewCustodyEvent) -> CustodyEvent:
        """
        Append an event at the end of its case's chain.
        
        Raises:
            GovernanceException: CONCURRENCY_CONFLICT if every retry lost the
                race for the next sequence number
        """
        last_seen = 0
        for attempt in range(1, self.max_retries + 1):
            last_seen = await self._last_sequence(event.case_id)
            record = CustodyEventRecord(
                id=f"custody-{uuid.uuid4()}",
                lab_id=event.lab_id,
                case_id=event.case_id,
                sequence=last_seen + 1,
                type=event.type,
                timestamp=event.timestamp,
                actor=event.actor.model_dump(mode="json"),
                location=event.location.model_dump(mode="json"),
                geo_hash=event.location.geo_hash,
                verification=event.verification.model_dump(mode="json") if event.verification else None,
                notes=event.notes,
                meta_data=event.metadata,
                location_flagged=event.location_flagged,
                correlation_id=event.correlation_id,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(record)
            except IntegrityError:
                logger.warning(
                    "Custody sequence conflict",
                    extra={"case_id": event.case_id, "sequence": last_seen + 1, "attempt": attempt},
                )
                continue
            return to_custody_event(record)
        
        actual = await self._last_sequence(event.case_id)
        raise GovernanceException(concurrency_error("custody_event", event.case_id, last_seen, actual))

    async def list_for_case(
        self,
        lab_id: str,
        case_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CustodyEvent]:
        query = select(CustodyEventRecord).where(
            CustodyEventRecord.lab_id == lab_id,
            CustodyEventRecord.case_id == case_id,
        )
        if since is not None:
            query = query.where(CustodyEventRecord.timestamp >= since)
        if until is not None:
            query = query.where(CustodyEventRecord.timestamp <= until)
        query = query.order_by(CustodyEventRecord.sequence)
        
        result = await self.db.execute(query)
        return [to_custody_event(record) for record in result.scalars().all()]
