"""
Optimistic concurrency guard.

Version compare for Case and Route updates. The guard decides; it never
mutates stored state and never merges.
"""

import logging
from typing import Any, Optional, Protocol

from labops.app.core.exceptions import Result, concurrency_error

logger = logging.getLogger(__name__)


class Versioned(Protocol):
    id: Any
    version: int


class VersionedUpdate(Protocol):
    expected_version: int


class ConcurrencyGuard:
    """
    Version check for one entity type.
    
    Usage:
        guard = ConcurrencyGuard("case")
        result = guard.apply_update(stored_case, update)
        if result.ok:
            new_version = result.value
    """

    def __init__(self, entity_type: str):
        self.entity_type = entity_type

    def apply_update(self, stored: Versioned, incoming: VersionedUpdate) -> Result[int]:
        """
        Accept iff ``incoming.expected_version == stored.version``.
        
        Returns:
            Result with the version the store must persist (stored + 1), or a
            CONCURRENCY_CONFLICT error naming both versions
        """
        return self.check(str(stored.id), stored.version, incoming.expected_version)

    def check(self, entity_id: str, stored_version: int, expected_version: Optional[int]) -> Result[int]:
        if expected_version is None or expected_version != stored_version:
            logger.warning(
                "Version Conflict",
                extra={
                    "entity_type": self.entity_type,
                    "entity_id": entity_id,
                    "expected_version": expected_version,
                    "actual_version": stored_version,
                },
            )
            return Result.rejected(concurrency_error(self.entity_type, entity_id, expected_version, stored_version))
        return Result.accepted(stored_version + 1)
