"""
Application submission.

One application per (profile, offering): the first submission creates it, any
later submission for the same pair updates it in place. Capacity and
eligibility are checked once up front and again inside the offering's critical
section right before the write, so concurrent submissions for the last seats
cannot over-admit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from ..utils.dependencies import UserIdentity
from ..utils.error_handlers import (
    CapacityExceededError,
    DuplicateApplicationError,
    InvalidTransitionError,
    NotOpenError,
    OfferingNotFoundError,
    ProfileRequiredError,
    StoreUnavailableError,
    get_error_message,
)
from ..utils.references import DocumentRef
from .admission_store import AdmissionStore, ApplicationRecord, ApplicationWrite, OfferingRecord, ProfileRecord
from .application_status import INITIAL_STATUSES, can_transition, leaves_draft
from .capacity import CapacityResolver
from .eligibility import CAPACITY_FULL, ineligibility
from .offering_locks import offering_lock
from .profile_resolver import ProfileResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    application: ApplicationRecord
    created: bool
    offering: OfferingRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _reject_if_ineligible(offering: OfferingRecord, view) -> None:
    reason = ineligibility(offering, offering.calendar, view)
    if reason is None:
        return
    if reason == CAPACITY_FULL:
        raise CapacityExceededError(details={"capacity": offering.capacity, "used": view.used})
    raise NotOpenError(details={"reason": reason})


class ApplicationUpsertService:
    # A uniqueness conflict means another process created the row first;
    # one retry turns it into an update.
    MAX_ATTEMPTS = 2

    def __init__(
        self,
        store: AdmissionStore,
        *,
        capacity: CapacityResolver | None = None,
        profiles: ProfileResolver | None = None,
        now: Callable[[], datetime] = _utcnow,
        lock_timeout_s: float | None = None,
    ):
        self.store = store
        self.capacity = capacity or CapacityResolver(store)
        self.profiles = profiles or ProfileResolver(store)
        self.now = now
        self.lock_timeout_s = lock_timeout_s

    def submit(self, identity: UserIdentity, offering_ref: DocumentRef, requested_status: str) -> SubmitResult:
        """
        Create or update the caller's application for one offering.

        Raises ProfileRequiredError, OfferingNotFoundError, NotOpenError,
        CapacityExceededError, InvalidTransitionError or StoreUnavailableError.
        `requested_status` must already be a canonical status.
        """
        profile = self.profiles.resolve_for_user(identity)
        if profile is None:
            raise ProfileRequiredError()
        return self.submit_for_profile(profile, offering_ref, requested_status)

    def submit_for_profile(
        self, profile: ProfileRecord, offering_ref: DocumentRef, requested_status: str
    ) -> SubmitResult:
        offering = self.store.get_offering(offering_ref)
        if offering is None:
            raise OfferingNotFoundError()

        # Advisory: gate on open/active flags only. Capacity is decided under the lock,
        # where an existing application keeps its seat.
        _reject_if_ineligible(offering, None)

        try:
            with offering_lock(offering.ref, timeout_s=self.lock_timeout_s):
                attempt = 1
                while True:
                    try:
                        return self._write_locked(profile, offering.ref, requested_status)
                    except DuplicateApplicationError:
                        if attempt >= self.MAX_ATTEMPTS:
                            raise
                        attempt += 1
                        logger.warning(
                            "Concurrent create for profile %s offering %s; retrying as update",
                            profile.ref.key,
                            offering.ref.key,
                        )
        except TimeoutError as e:
            logger.error(f"Submission lock timeout for offering {offering.ref.key}: {e}")
            raise StoreUnavailableError(get_error_message("store_unavailable")) from e

    def _write_locked(self, profile: ProfileRecord, offering_ref: DocumentRef, requested_status: str) -> SubmitResult:
        with self.store.transaction(offering_ref) as offering:
            if offering is None:
                raise OfferingNotFoundError()
            # Fresh read: a close that landed after the advisory check still wins.
            _reject_if_ineligible(offering, None)

            existing = self.store.find_application(profile.ref, offering.ref)
            if existing is not None:
                application = self._update(existing, profile, offering, requested_status)
                created = False
            else:
                view = self.capacity.resolve(offering, live=True)
                _reject_if_ineligible(offering, view)
                application = self._create(profile, offering, requested_status)
                created = True

        logger.info(
            "Application %s %s for profile %s offering %s status=%s",
            application.ref.key,
            "created" if created else "updated",
            profile.ref.key,
            offering.ref.key,
            application.application_status,
        )
        return SubmitResult(application=application, created=created, offering=offering)

    def _create(self, profile: ProfileRecord, offering: OfferingRecord, status: str) -> ApplicationRecord:
        if status not in INITIAL_STATUSES:
            raise InvalidTransitionError(
                f"A new application can't start as {status}.",
                details={"from": None, "to": status},
            )
        write = ApplicationWrite(
            application_status=status,
            submitted_at=self.now() if leaves_draft(status) else None,
            student_profile=profile.ref,
            program_offering=offering.ref,
            academic_calendar=offering.calendar.ref if offering.calendar else None,
        )
        return self.store.create_application(write)

    def _update(
        self, existing: ApplicationRecord, profile: ProfileRecord, offering: OfferingRecord, status: str
    ) -> ApplicationRecord:
        if not can_transition(existing.application_status, status):
            raise InvalidTransitionError(
                details={"from": existing.application_status, "to": status},
            )
        submitted_at = existing.submitted_at
        if submitted_at is None and leaves_draft(status):
            submitted_at = self.now()
        write = ApplicationWrite(
            application_status=status,
            submitted_at=submitted_at,
            student_profile=profile.ref,
            program_offering=offering.ref,
            academic_calendar=offering.calendar.ref if offering.calendar else existing.calendar_ref,
        )
        return self.store.update_application(existing.ref, write)
