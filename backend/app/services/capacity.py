"""
Seat usage for program offerings.

`used` comes from the count embedded in the offering record when the store
provides one, otherwise from a live count of seat-holding applications.
"""
import logging
from dataclasses import dataclass

from ..utils.error_handlers import StoreUnavailableError
from .admission_store import AdmissionStore, OfferingRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapacityView:
    capacity: int | None
    used: int
    remaining: int | None  # None = unlimited
    # True when `used` is a fallback because the count could not be read.
    approximate: bool = False

    @property
    def unlimited(self) -> bool:
        return self.capacity is None

    @property
    def is_full(self) -> bool:
        return self.capacity is not None and self.used >= self.capacity


def _remaining(capacity: int | None, used: int) -> int | None:
    if capacity is None:
        return None
    return max(capacity - used, 0)


class CapacityResolver:
    def __init__(self, store: AdmissionStore, *, fail_open: bool = True):
        self.store = store
        self.fail_open = fail_open

    def resolve(self, offering: OfferingRecord, *, live: bool = False) -> CapacityView:
        """
        Project `used`/`remaining` for an offering. Read-only.

        live=False (listings, advisory checks): an embedded count is trusted and a
        failed count falls back to used=0, flagged `approximate`, when fail_open is set.
        live=True (the submission path): always counts, and count failures propagate.
        """
        capacity = offering.capacity

        if not live and offering.embedded_used is not None:
            used = max(int(offering.embedded_used), 0)
            return CapacityView(capacity=capacity, used=used, remaining=_remaining(capacity, used))

        try:
            used = max(int(self.store.count_applications(offering.ref)), 0)
        except StoreUnavailableError:
            if live or not self.fail_open:
                raise
            # Fail open: may show seats that are already taken. Submissions recount live.
            logger.warning("Seat count unavailable for offering %s; reporting used=0", offering.ref.key)
            return CapacityView(capacity=capacity, used=0, remaining=_remaining(capacity, 0), approximate=True)

        return CapacityView(capacity=capacity, used=used, remaining=_remaining(capacity, used))
