"""
Lifecycle state machine.

``transition`` is a pure decision function: it validates a requested status
change against the transition table and the target state's requirements and
returns a ``Result``. It never persists anything; callers commit accepted
decisions themselves.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from labops.app.core.clock import utcnow
from labops.app.core.exceptions import (
    GovernanceError,
    Result,
    invalid_transition,
    location_out_of_tolerance,
    missing_required_field,
    validation_failed,
)
from labops.app.domain.workflow.requirements import ProximityRule, is_present, normalize_fields, requirements_for
from labops.app.domain.workflow.transition_table import TRANSITION_TABLES, coerce_status, lifecycle_phase
from labops.app.models.enums import EntityType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionDecision:
    """An accepted transition, ready for the caller to persist."""
    entity_type: EntityType
    previous_status: enum.Enum
    new_status: enum.Enum
    fields: Dict[str, Any]
    skipped_rules: Tuple[str, ...] = ()
    entity_id: Optional[str] = None

    @property
    def phase(self):
        return lifecycle_phase(self.entity_type, self.new_status)


def _reject(error: GovernanceError) -> Result[TransitionDecision]:
    logger.warning(
        "Transition Rejected",
        extra={
            "entity_type": error.entity_type,
            "entity_id": error.entity_id,
            "error_code": error.error_code,
            "reason": error.message,
        },
    )
    return Result.rejected(error)


def transition(
    entity_type,
    current_status,
    requested_status,
    fields: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
    entity_id: Optional[str] = None,
) -> Result[TransitionDecision]:
    """
    Validate a status change for one entity.
    
    Args:
        entity_type: EntityType (or its value) of a governed entity
        current_status: Stored status
        requested_status: Status the caller wants to enter
        fields: Payload plus any context facts (routeStatus, clinicGeoHash, ...)
        now: Reference time for "in the future" rules (defaults to UTC now)
        entity_id: Used only to enrich errors and logs
    
    Returns:
        Result with a TransitionDecision; warnings carry non-blocking
        rule failures such as LOCATION_OUT_OF_TOLERANCE.
    """
    entity_type = EntityType(entity_type)
    if entity_type not in TRANSITION_TABLES:
        raise ValueError(f"No lifecycle is registered for entity type '{entity_type.value}'")
    
    current = coerce_status(entity_type, current_status)
    requested = coerce_status(entity_type, requested_status)
    
    # 1. Allowed-next-state lookup (terminal and self transitions have no entry)
    if current is None or requested is None or requested not in TRANSITION_TABLES[entity_type][current]:
        return _reject(invalid_transition(
            entity_type.value,
            getattr(current, "value", str(current_status)),
            getattr(requested, "value", str(requested_status)),
            entity_id=entity_id,
        ))
    
    facts = normalize_fields(fields)
    requirements = requirements_for(entity_type, requested)
    
    # 2. Required fields for the target state
    for name in requirements.fields_for(facts):
        if not is_present(facts.get(name)):
            return _reject(missing_required_field(entity_type.value, name, entity_id=entity_id))
    
    # 3. Named rules
    now = now or utcnow()
    warnings = []
    skipped = []
    for rule in requirements.rules:
        outcome = rule.evaluate(facts, now)
        if outcome.passed is None:
            skipped.append(rule.name)
            continue
        if outcome.passed:
            continue
        if rule.blocking:
            return _reject(validation_failed(entity_type.value, rule.name, field=rule.field, entity_id=entity_id))
        if isinstance(rule, ProximityRule):
            warning = location_out_of_tolerance(
                outcome.details.get("distance_meters"),
                outcome.details["tolerance_meters"],
                rule.name,
                entity_type=entity_type.value,
                entity_id=entity_id,
            )
        else:
            warning = validation_failed(entity_type.value, rule.name, field=rule.field, entity_id=entity_id)
        logger.warning(
            "Transition Advisory",
            extra={"entity_type": entity_type.value, "entity_id": entity_id, "rule": rule.name, **outcome.details},
        )
        warnings.append(warning)
    
    decision = TransitionDecision(
        entity_type=entity_type,
        previous_status=current,
        new_status=requested,
        fields=facts,
        skipped_rules=tuple(skipped),
        entity_id=entity_id,
    )
    return Result.accepted(decision, warnings=tuple(warnings))


def can_transition(entity_type, current_status, requested_status) -> bool:
    """Table-only check, ignoring field requirements."""
    current = coerce_status(entity_type, current_status)
    requested = coerce_status(entity_type, requested_status)
    if current is None or requested is None:
        return False
    return requested in TRANSITION_TABLES[EntityType(entity_type)][current]
