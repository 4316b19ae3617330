import pytest

from backend.app.services.admission_store import CalendarRecord, OfferingRecord
from backend.app.services.capacity import CapacityResolver, CapacityView
from backend.app.services.eligibility import (
    CALENDAR_INACTIVE,
    CAPACITY_FULL,
    OFFERING_CLOSED,
    ineligibility,
    is_eligible,
)
from backend.app.utils.error_handlers import StoreUnavailableError
from backend.app.utils.references import DocumentRef


class _CountingStore:
    def __init__(self, count=0, fail=False):
        self.count = count
        self.fail = fail
        self.calls = 0

    def count_applications(self, offering):
        self.calls += 1
        if self.fail:
            raise StoreUnavailableError()
        return self.count


def _offering(capacity=10, *, is_open=True, active=True, embedded_used=None, calendar=True):
    return OfferingRecord(
        ref=DocumentRef(id=1, document_id="po-1"),
        is_open_for_apply=is_open,
        capacity=capacity,
        calendar=CalendarRecord(ref=DocumentRef(id=2), is_active=active) if calendar else None,
        embedded_used=embedded_used,
    )


def test_view_counts_seat_holding_applications():
    view = CapacityResolver(_CountingStore(count=3)).resolve(_offering(capacity=5))
    assert view == CapacityView(capacity=5, used=3, remaining=2)
    assert not view.is_full


def test_remaining_never_negative():
    view = CapacityResolver(_CountingStore(count=12)).resolve(_offering(capacity=10))
    assert view.remaining == 0
    assert view.is_full


def test_unlimited_capacity_has_no_remaining():
    view = CapacityResolver(_CountingStore(count=40)).resolve(_offering(capacity=None))
    assert view.unlimited
    assert view.remaining is None
    assert not view.is_full


def test_embedded_count_is_used_for_listings_only():
    store = _CountingStore(count=4)
    resolver = CapacityResolver(store)

    listed = resolver.resolve(_offering(capacity=5, embedded_used=1))
    assert listed.used == 1
    assert store.calls == 0

    live = resolver.resolve(_offering(capacity=5, embedded_used=1), live=True)
    assert live.used == 4
    assert store.calls == 1


def test_count_failure_fails_open_for_listings():
    view = CapacityResolver(_CountingStore(fail=True)).resolve(_offering(capacity=5))
    assert view.used == 0
    assert view.remaining == 5
    assert view.approximate is True


def test_count_failure_propagates_on_live_path():
    with pytest.raises(StoreUnavailableError):
        CapacityResolver(_CountingStore(fail=True)).resolve(_offering(), live=True)


def test_count_failure_propagates_when_fail_open_disabled():
    with pytest.raises(StoreUnavailableError):
        CapacityResolver(_CountingStore(fail=True), fail_open=False).resolve(_offering())


def test_ineligibility_reasons_in_order():
    full = CapacityView(capacity=1, used=1, remaining=0)
    assert ineligibility(_offering(capacity=1, is_open=False, active=False), None, full) == OFFERING_CLOSED

    offering = _offering(capacity=1, active=False)
    assert ineligibility(offering, offering.calendar, full) == CALENDAR_INACTIVE

    offering = _offering(capacity=1)
    assert ineligibility(offering, offering.calendar, full) == CAPACITY_FULL
    assert ineligibility(offering, offering.calendar, None) is None


def test_missing_calendar_is_not_eligible():
    offering = _offering(calendar=False)
    view = CapacityView(capacity=10, used=0, remaining=10)
    assert ineligibility(offering, offering.calendar, view) == CALENDAR_INACTIVE


def test_is_eligible():
    offering = _offering(capacity=None)
    assert is_eligible(offering, offering.calendar, CapacityView(capacity=None, used=500, remaining=None))

    offering = _offering(capacity=0)
    assert not is_eligible(offering, offering.calendar, CapacityView(capacity=0, used=0, remaining=0))
