"""
Cross-cutting enumerations.

Entity kinds governed by the lifecycle layer and audit severity tiers.
"""

import enum


class EntityType(str, enum.Enum):
    """Entity kinds that carry a governed lifecycle or version."""
    PICKUP_REQUEST = "pickup"
    ROUTE_STOP = "stop"
    ROUTE = "route"
    CASE = "case"


class AuditSeverity(str, enum.Enum):
    """
    Audit severity tiers.
    
    INFO: Routine state changes and custody records
    SECURITY: Security-relevant actions (access denials, concurrency conflicts, flagged locations)
    CRITICAL: Events requiring immediate review (e.g. custody exceptions)
    """
    INFO = "INFO"
    SECURITY = "SECURITY"
    CRITICAL = "CRITICAL"
