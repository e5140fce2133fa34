"""
Per-state transition requirements.

Each target status registers the fields that must be present and the named
rules that must hold before an entity may enter it. Field names follow the
event wire vocabulary (``windowStart``, ``actualArrival``); snake_case keys
are accepted and normalized.

Rules only judge facts they are given. A rule whose inputs are absent (for
example ``routeStatus`` when the caller has not loaded the route) is skipped
and reported as such, never treated as passing data it did not see.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from pydantic.alias_generators import to_camel

from labops.app.core.clock import parse_datetime
from labops.app.domain.geo.validator import DEFAULT_TOLERANCE_METERS, within_tolerance
from labops.app.models.enums import EntityType
from labops.app.models.logistics_enums import PickupRequestStatus, RouteStatus, StopStatus, StopType

P = PickupRequestStatus
S = StopStatus
R = RouteStatus

SIGNATURE_URL_SCHEMES = ("https", "http", "s3")


def normalize_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Copy ``fields`` with snake_case keys converted to camelCase."""
    if not fields:
        return {}
    return {(to_camel(key) if "_" in key else key): value for key, value in fields.items()}


def is_present(value: Any) -> bool:
    return value is not None and value != ""


@dataclass(frozen=True)
class RuleOutcome:
    """Result of evaluating one rule: passed is None when the rule was skipped."""
    passed: Optional[bool]
    details: Dict[str, Any] = field(default_factory=dict)


SKIPPED = RuleOutcome(passed=None)


@dataclass(frozen=True)
class Rule:
    """A named predicate over the transition facts."""
    name: str
    check: Callable[[Mapping[str, Any], datetime], Optional[bool]]
    field: Optional[str] = None
    blocking: bool = True

    def evaluate(self, facts: Mapping[str, Any], now: datetime) -> RuleOutcome:
        passed = self.check(facts, now)
        return SKIPPED if passed is None else RuleOutcome(passed=passed)


@dataclass(frozen=True)
class ProximityRule:
    """Geohash distance check; non-blocking unless stated otherwise."""
    name: str
    point_field: str
    reference_field: str
    blocking: bool = False

    @property
    def field(self) -> str:
        return self.point_field

    def evaluate(self, facts: Mapping[str, Any], now: datetime) -> RuleOutcome:
        point = facts.get(self.point_field)
        reference = facts.get(self.reference_field)
        if not is_present(point) or not is_present(reference):
            return SKIPPED
        tolerance = facts.get("toleranceMeters")
        if tolerance is None:
            tolerance = DEFAULT_TOLERANCE_METERS
        try:
            valid, distance_meters = within_tolerance(point, reference, tolerance)
        except ValueError as exc:
            return RuleOutcome(passed=False, details={"error": str(exc), "tolerance_meters": tolerance})
        return RuleOutcome(
            passed=valid,
            details={"distance_meters": round(distance_meters, 2), "tolerance_meters": tolerance},
        )


@dataclass(frozen=True)
class StateRequirements:
    """
    Requirements for entering one status.
    
    conditional_fields: extra required fields keyed by the value of
    ``discriminator`` (e.g. stop ``type``).
    """
    required_fields: Tuple[str, ...] = ()
    rules: Tuple[Any, ...] = ()
    discriminator: Optional[str] = None
    conditional_fields: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def fields_for(self, facts: Mapping[str, Any]) -> Tuple[str, ...]:
        if not self.discriminator:
            return self.required_fields
        kind = facts.get(self.discriminator)
        kind = getattr(kind, "value", kind)
        return self.required_fields + self.conditional_fields.get(kind, ())


# Fact helpers

def _when(facts: Mapping[str, Any], name: str) -> Optional[datetime]:
    return parse_datetime(facts.get(name))


def _ordered(earlier: str, later: str, strict: bool) -> Callable[[Mapping[str, Any], datetime], Optional[bool]]:
    def check(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
        first, second = _when(facts, earlier), _when(facts, later)
        if first is None or second is None:
            return None
        return first < second if strict else first <= second
    return check


def _in_future(name: str) -> Callable[[Mapping[str, Any], datetime], Optional[bool]]:
    def check(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
        value = _when(facts, name)
        if value is None:
            return None
        return value > now
    return check


def _flag(name: str) -> Callable[[Mapping[str, Any], datetime], Optional[bool]]:
    def check(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
        value = facts.get(name)
        if value is None:
            return None
        return bool(value)
    return check


def _status_in(name: str, status_enum, allowed) -> Callable[[Mapping[str, Any], datetime], Optional[bool]]:
    def check(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
        value = facts.get(name)
        if value is None:
            return None
        value = getattr(value, "value", value)
        try:
            return status_enum(value) in allowed
        except ValueError:
            return False
    return check


def _stop_statuses(facts: Mapping[str, Any]) -> Optional[List[Optional[StopStatus]]]:
    stops = facts.get("stops")
    if stops is None:
        return None
    statuses = []
    for stop in stops:
        if isinstance(stop, Mapping):
            status = stop.get("status")
        else:
            status = getattr(stop, "status", stop)
        status = getattr(status, "value", status)
        try:
            statuses.append(StopStatus(status))
        except ValueError:
            statuses.append(None)
    return statuses


def _any_stop_pending(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    statuses = _stop_statuses(facts)
    if statuses is None:
        return None
    return S.PENDING in statuses


def _all_stops_closed(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    statuses = _stop_statuses(facts)
    if statuses is None:
        return None
    return all(status in (S.COMPLETED, S.SKIPPED) for status in statuses)


def _stops_not_empty(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    stops = facts.get("stops")
    if stops is None:
        return None
    return len(stops) > 0


def _date_not_past(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    value = facts.get("date")
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    elif not isinstance(value, date):
        try:
            value = date.fromisoformat(str(value)[:10])
        except ValueError:
            return False
    return value >= now.date()


def _positive(name: str) -> Callable[[Mapping[str, Any], datetime], Optional[bool]]:
    def check(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
        value = facts.get(name)
        if value is None:
            return None
        try:
            return int(value) > 0
        except (TypeError, ValueError):
            return False
    return check


def _codes_match(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    expected = facts.get("expectedVerificationCode")
    provided = facts.get("verificationCode")
    if not is_present(expected) or not is_present(provided):
        return None
    return str(provided) == str(expected)


def _valid_signature_url(facts: Mapping[str, Any], now: datetime) -> Optional[bool]:
    value = facts.get("signatureUrl")
    if not is_present(value):
        return None
    parsed = urlparse(str(value))
    return parsed.scheme in SIGNATURE_URL_SCHEMES and bool(parsed.netloc)


PICKUP_REQUIREMENTS: Dict[PickupRequestStatus, StateRequirements] = {
    P.PENDING: StateRequirements(
        required_fields=("clinicId", "windowStart", "windowEnd", "packageCount"),
        rules=(
            Rule("windowStart must be before windowEnd", _ordered("windowStart", "windowEnd", strict=True), "windowStart"),
            Rule("windowEnd must be in the future", _in_future("windowEnd"), "windowEnd"),
        ),
    ),
    P.ASSIGNED: StateRequirements(
        required_fields=("driverId", "routeId"),
        rules=(
            Rule("Driver must be active", _flag("driverActive"), "driverId"),
            Rule("Route must be Scheduled or InProgress", _status_in("routeStatus", RouteStatus, {R.SCHEDULED, R.IN_PROGRESS}), "routeId"),
        ),
    ),
    P.EN_ROUTE: StateRequirements(
        required_fields=("driverId", "routeId", "stopId"),
        rules=(
            Rule("Route must be InProgress", _status_in("routeStatus", RouteStatus, {R.IN_PROGRESS}), "routeId"),
        ),
    ),
    P.ARRIVED: StateRequirements(
        required_fields=("actualArrival", "geoLocation"),
        rules=(
            ProximityRule("Geo location must be within 100m of clinic address", "geoLocation", "clinicGeoHash"),
        ),
    ),
    P.COMPLETED: StateRequirements(
        required_fields=("completedAt", "verificationCode", "signatureUrl", "packageCount"),
        rules=(
            Rule("Verification code must match original", _codes_match, "verificationCode"),
            Rule("Signature URL must be valid", _valid_signature_url, "signatureUrl"),
            Rule("Package count must be > 0", _positive("packageCount"), "packageCount"),
        ),
    ),
    P.SKIPPED: StateRequirements(required_fields=("skipReason",)),
    P.RESCHEDULED: StateRequirements(
        required_fields=("rescheduleReason", "newWindowStart", "newWindowEnd"),
        rules=(
            Rule("New window must be in the future", _in_future("newWindowStart"), "newWindowStart"),
            Rule("newWindowStart must be before newWindowEnd", _ordered("newWindowStart", "newWindowEnd", strict=True), "newWindowStart"),
        ),
    ),
    P.CANCELLED: StateRequirements(required_fields=("cancellationReason",)),
}

STOP_REQUIREMENTS: Dict[StopStatus, StateRequirements] = {
    S.PENDING: StateRequirements(required_fields=("clinicId", "type", "sequence")),
    S.IN_PROGRESS: StateRequirements(
        required_fields=("estimatedArrival",),
        rules=(
            Rule("Route must be InProgress", _status_in("routeStatus", RouteStatus, {R.IN_PROGRESS}), "routeId"),
        ),
    ),
    S.ARRIVED: StateRequirements(
        required_fields=("actualArrival", "geoHash"),
        rules=(
            ProximityRule("Geo location must be within 100m of stop address", "geoHash", "clinicGeoHash"),
            Rule("actualArrival must be >= route.startTime", _ordered("routeStartTime", "actualArrival", strict=False), "actualArrival"),
        ),
    ),
    S.COMPLETED: StateRequirements(
        required_fields=("completedAt", "geoHashAtCompletion"),
        rules=(
            Rule("completedAt must be >= actualArrival", _ordered("actualArrival", "completedAt", strict=False), "completedAt"),
        ),
        discriminator="type",
        conditional_fields={
            StopType.DELIVERY.value: ("signatureUrl", "signedBy"),
            StopType.PICKUP.value: ("verificationCode",),
        },
    ),
    S.SKIPPED: StateRequirements(required_fields=("skipReason",)),
}

ROUTE_REQUIREMENTS: Dict[RouteStatus, StateRequirements] = {
    R.SCHEDULED: StateRequirements(
        required_fields=("driverId", "vehicleId", "date", "stops"),
        rules=(
            Rule("stops array must not be empty", _stops_not_empty, "stops"),
            Rule("date must be today or future", _date_not_past, "date"),
        ),
    ),
    R.IN_PROGRESS: StateRequirements(
        required_fields=("startTime",),
        rules=(
            Rule("At least one stop must be Pending", _any_stop_pending, "stops"),
            Rule("Driver must be active", _flag("driverActive"), "driverId"),
            Rule("Vehicle must be active", _flag("vehicleActive"), "vehicleId"),
        ),
    ),
    R.COMPLETED: StateRequirements(
        required_fields=("endTime",),
        rules=(
            Rule("All stops must be Completed or Skipped", _all_stops_closed, "stops"),
            Rule("endTime must be >= startTime", _ordered("startTime", "endTime", strict=False), "endTime"),
        ),
    ),
    R.CANCELLED: StateRequirements(required_fields=("cancellationReason",)),
}

REQUIREMENTS = {
    EntityType.PICKUP_REQUEST: PICKUP_REQUIREMENTS,
    EntityType.ROUTE_STOP: STOP_REQUIREMENTS,
    EntityType.ROUTE: ROUTE_REQUIREMENTS,
}


def requirements_for(entity_type, status) -> StateRequirements:
    return REQUIREMENTS[EntityType(entity_type)].get(status, StateRequirements())


def describe_requirements(entity_type) -> Dict[str, Dict[str, Any]]:
    """JSON-friendly view of the requirements table for one entity type."""
    described = {}
    for status, requirements in REQUIREMENTS[EntityType(entity_type)].items():
        entry: Dict[str, Any] = {
            "requiredFields": list(requirements.required_fields),
            "validations": [rule.name for rule in requirements.rules if rule.blocking],
            "advisories": [rule.name for rule in requirements.rules if not rule.blocking],
        }
        if requirements.discriminator:
            entry["conditionalFields"] = {
                requirements.discriminator: {
                    kind: list(names) for kind, names in requirements.conditional_fields.items()
                }
            }
        described[status.value] = entry
    return described
