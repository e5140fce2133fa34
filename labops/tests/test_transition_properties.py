"""
Property tests for the transition table, version guard, verification codes
and geo tolerance.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from hypothesis import given, strategies as st

from labops.app.core.concurrency import ConcurrencyGuard
from labops.app.core.exceptions import ErrorKind
from labops.app.domain.custody.verification import generate_verification_code
from labops.app.domain.geo import geohash
from labops.app.domain.geo.validator import within_tolerance
from labops.app.domain.workflow.state_machine import transition
from labops.app.domain.workflow.transition_table import STATUS_ENUMS, TRANSITION_TABLES, terminal_states
from labops.app.models.enums import EntityType

ENTITY_TYPES = [EntityType.PICKUP_REQUEST, EntityType.ROUTE_STOP, EntityType.ROUTE]


@st.composite
def status_pairs(draw):
    entity_type = draw(st.sampled_from(ENTITY_TYPES))
    statuses = list(STATUS_ENUMS[entity_type])
    return entity_type, draw(st.sampled_from(statuses)), draw(st.sampled_from(statuses))


@given(status_pairs())
def test_pairs_outside_the_table_are_invalid(pair):
    entity_type, current, requested = pair
    result = transition(entity_type, current, requested, {})
    if requested not in TRANSITION_TABLES[entity_type][current]:
        assert result.error.kind == ErrorKind.INVALID_TRANSITION
    else:
        assert result.ok or result.error.kind != ErrorKind.INVALID_TRANSITION


@st.composite
def terminal_attempts(draw):
    entity_type = draw(st.sampled_from(ENTITY_TYPES))
    current = draw(st.sampled_from(terminal_states(entity_type)))
    requested = draw(st.sampled_from(list(STATUS_ENUMS[entity_type])))
    return entity_type, current, requested


@given(terminal_attempts(), st.dictionaries(st.sampled_from(["reason", "completedAt", "endTime"]), st.text(max_size=5)))
def test_terminal_statuses_never_transition(attempt, fields):
    entity_type, current, requested = attempt
    result = transition(entity_type, current, requested, fields)
    assert not result.ok
    assert result.error.kind == ErrorKind.INVALID_TRANSITION


@dataclass
class StoredCase:
    id: str
    version: int


@dataclass
class IncomingUpdate:
    expected_version: int


@given(st.integers(min_value=0, max_value=10_000), st.integers(min_value=0, max_value=10_000))
def test_apply_update_accepts_only_the_current_version(stored_version, expected_version):
    stored = StoredCase(id="case-1", version=stored_version)
    result = ConcurrencyGuard("case").apply_update(stored, IncomingUpdate(expected_version=expected_version))

    if expected_version == stored_version:
        assert result.ok
        assert result.value == stored_version + 1
    else:
        assert result.error.kind == ErrorKind.CONCURRENCY_CONFLICT
        assert result.error.expected_version == expected_version
        assert result.error.actual_version == stored_version
    # The guard never mutates what it was given
    assert stored.version == stored_version


timestamps = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)


@given(st.text(min_size=1, max_size=40), timestamps)
def test_verification_code_is_deterministic(case_id, timestamp):
    code = generate_verification_code(case_id, timestamp)
    assert code == generate_verification_code(case_id, timestamp)
    assert len(code) == 6 and code.isdigit()


def test_verification_code_varies_with_inputs():
    timestamp = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    codes = {generate_verification_code(f"case-{index}", timestamp) for index in range(50)}
    # Collisions are possible but 50 identical codes are not
    assert len(codes) > 40
    assert generate_verification_code("case-1", "2026-03-02T09:00:00Z") == generate_verification_code("case-1", timestamp)


coordinates = st.tuples(
    st.floats(min_value=-80, max_value=80, allow_nan=False),
    st.floats(min_value=-179, max_value=179, allow_nan=False),
)


@given(coordinates, coordinates, st.floats(min_value=0, max_value=1_000_000, allow_nan=False))
def test_within_tolerance_is_symmetric(first, second, tolerance):
    first_hash = geohash.encode(*first)
    second_hash = geohash.encode(*second)
    assert within_tolerance(first_hash, second_hash, tolerance) == within_tolerance(second_hash, first_hash, tolerance)


@given(
    coordinates,
    coordinates,
    st.floats(min_value=0, max_value=1_000_000, allow_nan=False),
    st.floats(min_value=0, max_value=1_000_000, allow_nan=False),
)
def test_within_tolerance_is_monotonic(first, second, tolerance, extra):
    first_hash = geohash.encode(*first)
    second_hash = geohash.encode(*second)
    valid, _ = within_tolerance(first_hash, second_hash, tolerance)
    if valid:
        assert within_tolerance(first_hash, second_hash, tolerance + extra)[0]
