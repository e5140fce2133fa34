"""
Custody event database model.

Append-only ledger of physical handoffs. Rows are never updated or deleted;
corrections are new Exception events.
"""

import uuid

from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON, Boolean, Text, UniqueConstraint
from labops.app.db.session import Base
from labops.app.models.custody_enums import CustodyEventType


class CustodyEventRecord(Base):
    """
    Custody event model.
    
    ``sequence`` is the per-case append position; the unique constraint on
    (case_id, sequence) serializes concurrent appends for one case.
    """
    __tablename__ = "custody_events"
    
    id = Column(String(64), primary_key=True, default=lambda: f"custody-{uuid.uuid4()}")
    lab_id = Column(String(64), nullable=False, index=True)
    case_id = Column(String(64), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    
    type = Column(Enum(CustodyEventType), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    
    # Snapshots (actor, location, verification) as recorded at handoff time
    actor = Column(JSON, nullable=False)
    location = Column(JSON, nullable=False)
    geo_hash = Column(String(12), nullable=True)
    verification = Column(JSON, nullable=True)
    
    notes = Column(Text, nullable=False, default="")
    meta_data = Column(JSON, nullable=False, default=dict)
    
    # Set when the recorded location failed the tolerance check
    location_flagged = Column(Boolean, nullable=False, default=False)
    correlation_id = Column(String(64), nullable=True, index=True)
    
    __table_args__ = (
        UniqueConstraint("case_id", "sequence", name="uq_custody_events_case_sequence"),
    )
    
    def __repr__(self):
        return f"<CustodyEventRecord(case_id={self.case_id}, seq={self.sequence}, type='{self.type.value}')>"
