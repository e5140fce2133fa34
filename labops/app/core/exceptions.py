"""
Structured errors and results for the governance layer.

Every failure is a tagged ``GovernanceError`` value. Decision functions return
a ``Result`` so callers can branch on ``result.error.kind``; operations that
are contracted to fail raise ``GovernanceException``, which wraps the same
value.
"""

import dataclasses
import enum
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    """Error taxonomy."""
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    ACCESS_DENIED = "ACCESS_DENIED"
    INVALID_CONTEXT = "INVALID_CONTEXT"
    LOCATION_OUT_OF_TOLERANCE = "LOCATION_OUT_OF_TOLERANCE"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    NOT_FOUND = "NOT_FOUND"


ERROR_CODES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_TRANSITION: "ERR_TRANSITION_001",
    ErrorKind.MISSING_REQUIRED_FIELD: "ERR_TRANSITION_002",
    ErrorKind.VALIDATION_FAILED: "ERR_TRANSITION_003",
    ErrorKind.CONCURRENCY_CONFLICT: "ERR_CONCURRENCY_001",
    ErrorKind.ACCESS_DENIED: "ERR_PERM_001",
    ErrorKind.INVALID_CONTEXT: "ERR_AUTH_001",
    ErrorKind.LOCATION_OUT_OF_TOLERANCE: "ERR_GEO_001",
    ErrorKind.MISSING_FIELD: "ERR_VALIDATION",
    ErrorKind.INVALID_SIGNATURE: "ERR_AUTH_002",
    ErrorKind.NOT_FOUND: "ERR_NOT_FOUND_001",
}

# Kinds that must reach the audit trail before being returned to the caller
AUDITED_KINDS = frozenset({ErrorKind.ACCESS_DENIED, ErrorKind.CONCURRENCY_CONFLICT})


@dataclass(frozen=True)
class GovernanceError:
    """A structured, tagged error value."""
    kind: ErrorKind
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    field: Optional[str] = None
    rule: Optional[str] = None
    expected_version: Optional[int] = None
    actual_version: Optional[int] = None
    details: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def error_code(self) -> str:
        return ERROR_CODES[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used in audit metadata and log extras."""
        data = {
            "kind": self.kind.value,
            "error_code": self.error_code,
            "message": self.message,
        }
        for name in ("entity_type", "entity_id", "field", "rule", "expected_version", "actual_version"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.details:
            data["details"] = dict(self.details)
        return data


class GovernanceException(Exception):
    """Raised by operations whose contract is to fail rather than return a Result."""

    def __init__(self, error: GovernanceError):
        self.error = error
        super().__init__(error.message)

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a decision: either a value (plus non-fatal warnings) or an error."""
    value: Optional[T] = None
    error: Optional[GovernanceError] = None
    warnings: Tuple[GovernanceError, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def accepted(cls, value: Optional[T] = None, warnings: Tuple[GovernanceError, ...] = ()) -> "Result[T]":
        return cls(value=value, warnings=tuple(warnings))

    @classmethod
    def rejected(cls, error: GovernanceError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise GovernanceException(self.error)
        return self.value


# Constructors

def invalid_transition(
    entity_type: str,
    current_status: str,
    requested_status: str,
    entity_id: Optional[str] = None,
) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.INVALID_TRANSITION,
        message=f"Invalid {entity_type} transition: {current_status} -> {requested_status}",
        entity_type=entity_type,
        entity_id=entity_id,
        details={"current_status": current_status, "requested_status": requested_status},
    )


def missing_required_field(entity_type: str, name: str, entity_id: Optional[str] = None) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.MISSING_REQUIRED_FIELD,
        message=f"{name} is required",
        entity_type=entity_type,
        entity_id=entity_id,
        field=name,
    )


def validation_failed(
    entity_type: str,
    rule: str,
    field: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.VALIDATION_FAILED,
        message=f"Validation failed for {entity_type}: {rule}",
        entity_type=entity_type,
        entity_id=entity_id,
        field=field,
        rule=rule,
    )


def concurrency_error(
    entity_type: str,
    entity_id: str,
    expected_version: int,
    actual_version: int,
) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.CONCURRENCY_CONFLICT,
        message=(
            f"{entity_type} {entity_id} was modified concurrently: "
            f"expected version {expected_version}, found {actual_version}"
        ),
        entity_type=entity_type,
        entity_id=str(entity_id),
        expected_version=expected_version,
        actual_version=actual_version,
    )


def access_denied(
    resource_lab_id: Optional[str],
    context_lab_id: Optional[str],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.ACCESS_DENIED,
        message="Access denied: resource belongs to a different lab",
        entity_type=entity_type,
        entity_id=entity_id,
        details={"resource_lab_id": resource_lab_id, "context_lab_id": context_lab_id},
    )


def invalid_context(reason: str) -> GovernanceError:
    return GovernanceError(kind=ErrorKind.INVALID_CONTEXT, message=f"Invalid lab context: {reason}")


def location_out_of_tolerance(
    distance_meters: Optional[float],
    tolerance_meters: float,
    reason: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.LOCATION_OUT_OF_TOLERANCE,
        message=reason,
        entity_type=entity_type,
        entity_id=entity_id,
        details={"distance_meters": distance_meters, "tolerance_meters": tolerance_meters},
    )


def missing_field(name: str) -> GovernanceError:
    return GovernanceError(kind=ErrorKind.MISSING_FIELD, message=f"Missing required field: {name}", field=name)


def invalid_signature(source: str) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.INVALID_SIGNATURE,
        message=f"Invalid webhook signature from {source}",
        details={"source": source},
    )


def not_found(entity_type: str, entity_id: Any) -> GovernanceError:
    return GovernanceError(
        kind=ErrorKind.NOT_FOUND,
        message=f"{entity_type} with ID {entity_id} not found",
        entity_type=entity_type,
        entity_id=str(entity_id),
    )


def status_conflict(entity_type: str, entity_id: str, expected_status: str, actual_status: str) -> GovernanceError:
    """Compare-and-set on status lost to a concurrent writer."""
    return GovernanceError(
        kind=ErrorKind.CONCURRENCY_CONFLICT,
        message=(
            f"{entity_type} {entity_id} was modified concurrently: "
            f"expected status {expected_status}, found {actual_status}"
        ),
        entity_type=entity_type,
        entity_id=str(entity_id),
        details={"expected_status": expected_status, "actual_status": actual_status},
    )
