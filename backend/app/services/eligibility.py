from .admission_store import CalendarRecord, OfferingRecord
from .capacity import CapacityView

OFFERING_CLOSED = "offering_closed"
CALENDAR_INACTIVE = "calendar_inactive"
CAPACITY_FULL = "capacity_full"


def ineligibility(offering: OfferingRecord, calendar: CalendarRecord | None, view: CapacityView | None) -> str | None:
    """First reason the offering can't take a new application, or None if it can."""
    if not offering.is_open_for_apply:
        return OFFERING_CLOSED
    if calendar is None or not calendar.is_active:
        return CALENDAR_INACTIVE
    if view is not None and offering.capacity is not None and view.used >= offering.capacity:
        return CAPACITY_FULL
    return None


def is_eligible(offering: OfferingRecord, calendar: CalendarRecord | None, view: CapacityView) -> bool:
    return ineligibility(offering, calendar, view) is None
