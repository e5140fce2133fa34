"""
Lifecycle transition tables.

Fixed allowed-next-state sets for pickup requests, route stops and routes,
plus lifecycle phases and the reason catalogues used when recording why a
status changed.
"""

import enum
from typing import Dict, FrozenSet, List, Optional, Type

from labops.app.domain.workflow.requirements import describe_requirements
from labops.app.models.enums import EntityType
from labops.app.models.logistics_enums import PickupRequestStatus, RouteStatus, StopStatus

P = PickupRequestStatus
S = StopStatus
R = RouteStatus


PICKUP_TRANSITIONS: Dict[PickupRequestStatus, FrozenSet[PickupRequestStatus]] = {
    P.PENDING: frozenset({P.ASSIGNED, P.CANCELLED}),
    P.ASSIGNED: frozenset({P.EN_ROUTE, P.RESCHEDULED, P.CANCELLED}),
    P.EN_ROUTE: frozenset({P.ARRIVED, P.RESCHEDULED, P.CANCELLED}),
    P.ARRIVED: frozenset({P.COMPLETED, P.SKIPPED, P.RESCHEDULED}),
    P.COMPLETED: frozenset(),
    P.SKIPPED: frozenset({P.RESCHEDULED}),
    P.RESCHEDULED: frozenset({P.PENDING}),
    P.CANCELLED: frozenset(),
}

STOP_TRANSITIONS: Dict[StopStatus, FrozenSet[StopStatus]] = {
    S.PENDING: frozenset({S.IN_PROGRESS, S.SKIPPED}),
    S.IN_PROGRESS: frozenset({S.ARRIVED, S.SKIPPED}),
    S.ARRIVED: frozenset({S.COMPLETED, S.SKIPPED}),
    S.COMPLETED: frozenset(),
    S.SKIPPED: frozenset(),
}

ROUTE_TRANSITIONS: Dict[RouteStatus, FrozenSet[RouteStatus]] = {
    R.SCHEDULED: frozenset({R.IN_PROGRESS, R.CANCELLED}),
    R.IN_PROGRESS: frozenset({R.COMPLETED, R.CANCELLED}),
    R.COMPLETED: frozenset(),
    R.CANCELLED: frozenset(),
}

TRANSITION_TABLES = {
    EntityType.PICKUP_REQUEST: PICKUP_TRANSITIONS,
    EntityType.ROUTE_STOP: STOP_TRANSITIONS,
    EntityType.ROUTE: ROUTE_TRANSITIONS,
}

STATUS_ENUMS: Dict[EntityType, Type[enum.Enum]] = {
    EntityType.PICKUP_REQUEST: PickupRequestStatus,
    EntityType.ROUTE_STOP: StopStatus,
    EntityType.ROUTE: RouteStatus,
}

INITIAL_STATUS = {
    EntityType.PICKUP_REQUEST: P.PENDING,
    EntityType.ROUTE_STOP: S.PENDING,
    EntityType.ROUTE: R.SCHEDULED,
}


class LifecyclePhase(str, enum.Enum):
    PLANNING = "PLANNING"
    EXECUTION = "EXECUTION"
    TERMINAL = "TERMINAL"
    EXCEPTION = "EXCEPTION"


# A skipped pickup can still be rescheduled, so it sits with the exception
# states rather than the terminal ones.
PICKUP_LIFECYCLE_PHASES: Dict[LifecyclePhase, List[PickupRequestStatus]] = {
    LifecyclePhase.PLANNING: [P.PENDING],
    LifecyclePhase.EXECUTION: [P.ASSIGNED, P.EN_ROUTE, P.ARRIVED],
    LifecyclePhase.TERMINAL: [P.COMPLETED, P.CANCELLED],
    LifecyclePhase.EXCEPTION: [P.SKIPPED, P.RESCHEDULED],
}

STOP_LIFECYCLE_PHASES: Dict[LifecyclePhase, List[StopStatus]] = {
    LifecyclePhase.PLANNING: [S.PENDING],
    LifecyclePhase.EXECUTION: [S.IN_PROGRESS, S.ARRIVED],
    LifecyclePhase.TERMINAL: [S.COMPLETED, S.SKIPPED],
}

ROUTE_LIFECYCLE_PHASES: Dict[LifecyclePhase, List[RouteStatus]] = {
    LifecyclePhase.PLANNING: [R.SCHEDULED],
    LifecyclePhase.EXECUTION: [R.IN_PROGRESS],
    LifecyclePhase.TERMINAL: [R.COMPLETED, R.CANCELLED],
}

LIFECYCLE_PHASES = {
    EntityType.PICKUP_REQUEST: PICKUP_LIFECYCLE_PHASES,
    EntityType.ROUTE_STOP: STOP_LIFECYCLE_PHASES,
    EntityType.ROUTE: ROUTE_LIFECYCLE_PHASES,
}


class PickupTransitionReason:
    """Standard reasons recorded with pickup status changes."""
    DRIVER_ASSIGNED = "Driver assigned to route"
    DRIVER_DEPARTED = "Driver departed for pickup location"
    DRIVER_ARRIVED = "Driver arrived at pickup location"
    PICKUP_COMPLETED = "Pickup completed successfully"
    CLINIC_UNAVAILABLE = "Clinic was closed or unavailable"
    CLINIC_REQUESTED = "Clinic requested reschedule"
    TIME_CONSTRAINT = "Could not complete within time window"
    USER_CANCELLED = "User cancelled the request"
    SYSTEM_CANCELLED = "System cancelled due to timeout"


class StopTransitionReason:
    """Standard reasons recorded with stop status changes."""
    ROUTE_STARTED = "Route execution started"
    NAVIGATING = "Driver navigating to stop"
    ARRIVED = "Driver arrived at stop"
    SERVICE_COMPLETED = "Service completed at stop"
    CLINIC_CLOSED = "Clinic was closed"
    ACCESS_DENIED = "Could not access location"
    TIME_EXCEEDED = "Time window exceeded"


def _reason_catalogue(cls) -> Dict[str, str]:
    return {name: value for name, value in vars(cls).items() if name.isupper()}


PICKUP_TRANSITION_REASONS = _reason_catalogue(PickupTransitionReason)
STOP_TRANSITION_REASONS = _reason_catalogue(StopTransitionReason)


def _entity_type(entity_type) -> EntityType:
    entity_type = EntityType(entity_type)
    if entity_type not in TRANSITION_TABLES:
        raise ValueError(f"No lifecycle is registered for entity type '{entity_type.value}'")
    return entity_type


def coerce_status(entity_type, status) -> Optional[enum.Enum]:
    """
    Map a status value onto the entity's status enum.

    Accepts enum members, wire values ("EnRoute") and member names
    ("EN_ROUTE"). Returns None for anything outside the vocabulary.
    """
    status_enum = STATUS_ENUMS[_entity_type(entity_type)]
    if isinstance(status, status_enum):
        return status
    if isinstance(status, enum.Enum):
        status = status.value
    if not isinstance(status, str):
        return None
    try:
        return status_enum(status)
    except ValueError:
        return status_enum.__members__.get(status)


def allowed_next_states(entity_type, status) -> FrozenSet:
    """Allowed next states for ``status``; empty for unknown or terminal statuses."""
    current = coerce_status(entity_type, status)
    if current is None:
        return frozenset()
    return TRANSITION_TABLES[_entity_type(entity_type)][current]


def is_terminal(entity_type, status) -> bool:
    """A status is terminal when it has no outgoing transitions."""
    current = coerce_status(entity_type, status)
    return current is not None and not TRANSITION_TABLES[_entity_type(entity_type)][current]


def terminal_states(entity_type) -> List:
    table = TRANSITION_TABLES[_entity_type(entity_type)]
    return [status for status, targets in table.items() if not targets]


def lifecycle_phase(entity_type, status) -> Optional[LifecyclePhase]:
    current = coerce_status(entity_type, status)
    if current is None:
        return None
    for phase, statuses in LIFECYCLE_PHASES[_entity_type(entity_type)].items():
        if current in statuses:
            return phase
    return None


def workflow_definition(entity_type) -> Dict:
    """
    JSON-serializable description of an entity's workflow.

    Used by clients that render status pickers and by documentation tooling.
    """
    entity_type = _entity_type(entity_type)
    table = TRANSITION_TABLES[entity_type]
    return {
        "entityType": entity_type.value,
        "initialStatus": INITIAL_STATUS[entity_type].value,
        "statuses": [status.value for status in table],
        "transitions": {
            status.value: sorted(target.value for target in targets)
            for status, targets in table.items()
        },
        "terminalStates": [status.value for status in terminal_states(entity_type)],
        "phases": {
            phase.value: [status.value for status in statuses]
            for phase, statuses in LIFECYCLE_PHASES[entity_type].items()
        },
        "requirements": describe_requirements(entity_type),
    }
