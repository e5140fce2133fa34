"""
Logistics lifecycle enumerations.

Status vocabularies for pickup requests, route stops and routes.
"""

import enum


class PickupRequestStatus(str, enum.Enum):
    """Pickup request status enumeration."""
    PENDING = "Pending"  # Requested, not yet on a route
    ASSIGNED = "Assigned"  # Attached to a route and driver
    EN_ROUTE = "EnRoute"  # Driver heading to the clinic
    ARRIVED = "Arrived"  # Driver at the clinic
    COMPLETED = "Completed"  # Packages collected
    SKIPPED = "Skipped"  # Could not be serviced on this run
    RESCHEDULED = "Rescheduled"  # New window agreed, re-enters Pending
    CANCELLED = "Cancelled"  # Withdrawn


class StopStatus(str, enum.Enum):
    """Route stop status enumeration."""
    PENDING = "Pending"  # Not yet visited
    IN_PROGRESS = "InProgress"  # Driver navigating to the stop
    ARRIVED = "Arrived"  # Driver at the stop
    COMPLETED = "Completed"  # Service completed
    SKIPPED = "Skipped"  # Stop skipped


class RouteStatus(str, enum.Enum):
    """Route status enumeration."""
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class StopType(str, enum.Enum):
    """Route stop type enumeration."""
    PICKUP = "Pickup"  # Collect cases from a clinic
    DELIVERY = "Delivery"  # Deliver finished cases to a clinic


class FulfillmentMethod(str, enum.Enum):
    """Who physically performed a delivery (billing relevant)."""
    IN_HOUSE = "IN_HOUSE"
    THIRD_PARTY = "THIRD_PARTY"


class DeliveryType(str, enum.Enum):
    STANDARD = "Standard"
    RUSH = "Rush"
    SAME_DAY = "SameDay"
    EMERGENCY = "Emergency"
