"""
Logistics business-rule tests: time windows, entity validation, route
eligibility and service metrics.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from labops.app.domain.logistics.validation import (
    calculate_route_efficiency,
    calculate_sla_compliance,
    can_complete_pickup_in_window,
    can_complete_route,
    can_start_route,
    do_time_windows_overlap,
    is_valid_time_window,
    is_within_time_window,
    time_window_duration_minutes,
    validate_pickup_request,
    validate_route,
    validate_route_stop,
)
from labops.app.models.logistics_enums import StopStatus, StopType
from labops.app.schemas.logistics import PackageSpecs, PickupRequestDraft, Route, RouteStop, TimeWindow

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _window(start_hour: int, end_hour: int) -> TimeWindow:
    return TimeWindow(start=NOW.replace(hour=start_hour), end=NOW.replace(hour=end_hour))


def _stop(sequence: int, status: StopStatus = StopStatus.PENDING, **fields) -> RouteStop:
    return RouteStop(
        clinic_id=f"clinic-{sequence}",
        type=StopType.DELIVERY,
        sequence=sequence,
        status=status,
        case_ids=["case-1"],
        **fields,
    )


class TestTimeWindows:
    def test_valid_window(self):
        assert is_valid_time_window(_window(13, 15), NOW).allowed

    def test_inverted_window(self):
        check = is_valid_time_window(_window(15, 13), NOW)
        assert not check.allowed
        assert check.reason == "Window start must be before window end"

    def test_closed_window(self):
        check = is_valid_time_window(_window(8, 10), NOW)
        assert not check.allowed
        assert check.reason == "Window end must be in the future"

    def test_overlap_is_exclusive_at_edges(self):
        assert do_time_windows_overlap(_window(9, 11), _window(10, 12))
        assert not do_time_windows_overlap(_window(9, 11), _window(11, 13))

    def test_within_window_is_inclusive(self):
        window = _window(9, 11)
        assert is_within_time_window(NOW.replace(hour=9), window)
        assert is_within_time_window(NOW.replace(hour=11), window)
        assert not is_within_time_window(NOW.replace(hour=11, minute=1), window)

    def test_naive_timestamp_is_read_as_utc(self):
        assert is_within_time_window(datetime(2026, 3, 2, 10, 0), _window(9, 11))

    def test_duration(self):
        window = TimeWindow(start=NOW, end=NOW + timedelta(minutes=95, seconds=30))
        assert time_window_duration_minutes(window) == 95

    def test_pickup_fits_before_window_closes(self):
        window = _window(12, 13)
        assert can_complete_pickup_in_window(NOW, window, travel_time_min=40).allowed

    def test_pickup_misses_window(self):
        check = can_complete_pickup_in_window(NOW, _window(12, 13), travel_time_min=55)
        assert not check.allowed
        assert check.reason.startswith("Cannot complete before window closes")


class TestPickupRequestValidation:
    def test_valid_draft(self):
        draft = PickupRequestDraft(
            lab_id="lab-a", clinic_id="clinic-1",
            window_start=NOW + timedelta(hours=1), window_end=NOW + timedelta(hours=3),
            package_count=2,
        )
        report = validate_pickup_request(draft, NOW)
        assert report.valid
        assert report.errors == []

    def test_collects_every_violation(self):
        report = validate_pickup_request(PickupRequestDraft(package_count=0), NOW)
        assert not report.valid
        assert report.errors == [
            "clinicId is required",
            "labId is required",
            "windowStart is required",
            "windowEnd is required",
            "packageCount must be greater than 0",
        ]

    def test_package_weight_must_be_positive(self):
        draft = PickupRequestDraft(
            lab_id="lab-a", clinic_id="clinic-1",
            window_start=NOW + timedelta(hours=1), window_end=NOW + timedelta(hours=3),
            package_count=1, package_specs=PackageSpecs(weight=0),
        )
        assert validate_pickup_request(draft, NOW).errors == ["Package weight must be greater than 0"]


class TestRouteStopValidation:
    def test_valid_delivery_stop(self):
        assert validate_route_stop(_stop(1)).valid

    def test_delivery_stop_needs_cases(self):
        report = validate_route_stop(RouteStop(clinic_id="clinic-1", type=StopType.DELIVERY, sequence=1))
        assert report.errors == ["Delivery stops must have at least one delivery item"]

    def test_pickup_stop_needs_pickup_request(self):
        report = validate_route_stop(RouteStop(clinic_id="clinic-1", type=StopType.PICKUP, sequence=0))
        assert report.errors == ["Pickup stops must have at least one pickup task"]

    def test_coordinates_and_sequence(self):
        report = validate_route_stop(_stop(-1), latitude=91.0, longitude=-181.0)
        assert report.errors == [
            "sequence must be >= 0",
            "latitude must be between -90 and 90",
            "longitude must be between -180 and 180",
        ]


class TestRouteValidation:
    def test_valid_route(self):
        route = Route(lab_id="lab-a", date=date(2026, 3, 2), stops=[_stop(1), _stop(2)])
        assert validate_route(route).valid

    def test_empty_route(self):
        report = validate_route(Route())
        assert report.errors == ["labId is required", "date is required", "Route must have at least one stop"]

    def test_duplicate_sequences(self):
        route = Route(lab_id="lab-a", date=date(2026, 3, 2), stops=[_stop(1), _stop(1)])
        assert validate_route(route).errors == ["Stop sequences must be unique"]


class TestRouteEligibility:
    @pytest.mark.parametrize(
        "route, reason",
        [
            (Route(vehicle_id="van-3", stops=[_stop(1)]), "No driver assigned"),
            (Route(driver_id="driver-7", stops=[_stop(1)]), "No vehicle assigned"),
            (Route(driver_id="driver-7", vehicle_id="van-3"), "No stops in route"),
            (
                Route(driver_id="driver-7", vehicle_id="van-3", stops=[_stop(1, StopStatus.SKIPPED)]),
                "No pending stops",
            ),
        ],
    )
    def test_cannot_start(self, route, reason):
        check = can_start_route(route)
        assert not check.allowed
        assert check.reason == reason

    def test_can_start(self):
        route = Route(driver_id="driver-7", vehicle_id="van-3", stops=[_stop(1), _stop(2, StopStatus.SKIPPED)])
        assert can_start_route(route).allowed

    def test_can_complete_only_when_every_stop_is_closed(self):
        route = Route(stops=[_stop(1, StopStatus.COMPLETED), _stop(2, StopStatus.ARRIVED), _stop(3)])
        check = can_complete_route(route)
        assert not check.allowed
        assert check.reason == "2 stop(s) not completed or skipped"

        route = Route(stops=[_stop(1, StopStatus.COMPLETED), _stop(2, StopStatus.SKIPPED)])
        assert can_complete_route(route).allowed


class TestServiceMetrics:
    def test_on_time_delivery(self):
        sla = calculate_sla_compliance(NOW, NOW + timedelta(minutes=10))
        assert sla.compliant
        assert sla.variance_minutes == 10

    def test_grace_period_boundary(self):
        assert calculate_sla_compliance(NOW, NOW + timedelta(minutes=15)).compliant
        late = calculate_sla_compliance(NOW, NOW + timedelta(minutes=16))
        assert not late.compliant
        assert late.variance_minutes == 16

    def test_early_arrival_has_negative_variance(self):
        sla = calculate_sla_compliance(NOW, NOW - timedelta(minutes=5, seconds=30))
        assert sla.compliant
        assert sla.variance_minutes == -6

    def test_missing_arrival_is_non_compliant(self):
        sla = calculate_sla_compliance(NOW, None)
        assert not sla.compliant
        assert sla.variance_minutes == 0

    def test_custom_grace(self):
        assert not calculate_sla_compliance(NOW, NOW + timedelta(minutes=10), grace_minutes=5).compliant

    def test_route_efficiency(self):
        on_time = _stop(
            1, StopStatus.COMPLETED,
            estimated_arrival=NOW, actual_arrival=NOW + timedelta(minutes=5),
            completed_at=NOW + timedelta(minutes=15),
        )
        late = _stop(
            2, StopStatus.COMPLETED,
            estimated_arrival=NOW, actual_arrival=NOW + timedelta(minutes=30),
            completed_at=NOW + timedelta(minutes=50),
        )
        efficiency = calculate_route_efficiency(Route(stops=[on_time, late, _stop(3, StopStatus.SKIPPED), _stop(4)]))

        assert efficiency.completion_rate == 50.0
        assert efficiency.on_time_rate == 50.0
        assert efficiency.average_stop_time_min == 15

    def test_empty_route_efficiency(self):
        efficiency = calculate_route_efficiency(Route())
        assert efficiency.completion_rate == 0.0
        assert efficiency.on_time_rate == 0.0
        assert efficiency.average_stop_time_min == 0
