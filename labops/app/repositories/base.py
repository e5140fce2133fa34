"""
Storage contracts consumed by the governance core.

Adapters in this package implement them on SQLAlchemy; any store that
honors the same guarantees can be substituted.
"""

from datetime import datetime
from typing import List, Optional, Protocol

from labops.app.schemas.audit import AuditEntry, AuditEntryCreate, AuditQuery
from labops.app.schemas.custody import CustodyEvent, NewCustodyEvent
from labops.app.schemas.events import DomainEvent


class CustodyEventStore(Protocol):
    """
    Append-only custody event store.
    
    Guarantees:
    - append assigns a per-case sequence; same-case appends are serialized,
      cross-case appends proceed in parallel
    - no update or delete
    - list_for_case returns events in append order, optionally restricted
      to a time range
    """

    async def append(self, event: NewCustodyEvent) -> CustodyEvent:
        ...

    async def list_for_case(
        self,
        lab_id: str,
        case_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CustodyEvent]:
        ...


class AuditStore(Protocol):
    """Append-only audit store with a filtered read side."""

    async def append(self, entry: AuditEntryCreate) -> AuditEntry:
        ...

    async def query(self, lab_id: Optional[str], filters: AuditQuery) -> List[AuditEntry]:
        ...


class EventPublisher(Protocol):
    """Outbound domain event sink (event bus, outbox table, ...)."""

    async def publish(self, event: DomainEvent) -> None:
        ...
