from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.services.application_upsert import ApplicationUpsertService
from backend.app.services.sql_store import SqlAdmissionStore
from backend.app.utils.error_handlers import (
    CapacityExceededError,
    InvalidTransitionError,
    NotOpenError,
    OfferingNotFoundError,
    ProfileRequiredError,
)
from backend.app.utils.references import DocumentRef


class _Clock:
    def __init__(self):
        self.t = datetime(2025, 9, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.t = self.t + timedelta(minutes=1)
        return self.t


def _naive(dt):
    return dt.replace(tzinfo=None) if dt is not None else None


def _service(session, **kwargs):
    return ApplicationUpsertService(SqlAdmissionStore(session), **kwargs)


def test_first_submit_creates_then_resubmit_updates_same_record(seed, db_session, identity_for):
    offering = seed.offering(capacity=5)
    user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    first = service.submit(identity_for(user), ref, "Draft")
    assert first.created is True
    assert first.application.application_status == "Draft"
    assert first.application.submitted_at is None

    second = service.submit(identity_for(user), ref, "Submitted")
    assert second.created is False
    assert second.application.ref.id == first.application.ref.id
    assert second.application.application_status == "Submitted"
    assert second.application.submitted_at is not None

    assert len(SqlAdmissionStore(db_session).list_applications(first.application.profile_ref)) == 1


def test_offering_by_document_id_resolves_same_application(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    service = _service(db_session)

    by_id = service.submit(identity_for(user), DocumentRef(id=offering.id), "Draft")
    by_doc = service.submit(identity_for(user), DocumentRef(document_id=offering.document_id), "Draft")

    assert by_doc.created is False
    assert by_doc.application.ref.id == by_id.application.ref.id


def test_submitted_at_is_set_once_and_kept_through_review(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    clock = _Clock()
    service = _service(db_session, now=clock)
    ref = DocumentRef(id=offering.id)

    submitted = service.submit(identity_for(user), ref, "Submitted")
    stamped = submitted.application.submitted_at
    assert _naive(stamped) == _naive(clock.t)

    again = service.submit(identity_for(user), ref, "Submitted")
    approved = service.submit(identity_for(user), ref, "Approved")

    assert _naive(again.application.submitted_at) == _naive(stamped)
    assert approved.application.application_status == "Approved"
    assert _naive(approved.application.submitted_at) == _naive(stamped)


def test_new_application_cannot_start_reviewed(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()

    with pytest.raises(InvalidTransitionError):
        _service(db_session).submit(identity_for(user), DocumentRef(id=offering.id), "Approved")

    assert SqlAdmissionStore(db_session).count_applications(DocumentRef(id=offering.id)) == 0


def test_rejected_application_is_terminal(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    service.submit(identity_for(user), ref, "Submitted")
    service.submit(identity_for(user), ref, "Rejected")

    with pytest.raises(InvalidTransitionError) as exc:
        service.submit(identity_for(user), ref, "Submitted")
    assert exc.value.details == {"from": "Rejected", "to": "Submitted"}


def test_submitted_cannot_go_back_to_draft(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    service.submit(identity_for(user), ref, "Submitted")
    with pytest.raises(InvalidTransitionError):
        service.submit(identity_for(user), ref, "Draft")


def test_closed_offering_rejects_submission(seed, db_session, identity_for):
    offering = seed.offering(is_open=False)
    user, _ = seed.applicant()

    with pytest.raises(NotOpenError) as exc:
        _service(db_session).submit(identity_for(user), DocumentRef(id=offering.id), "Draft")
    assert exc.value.details == {"reason": "offering_closed"}


def test_inactive_calendar_rejects_submission(seed, db_session, identity_for):
    offering = seed.offering(calendar_active=False)
    user, _ = seed.applicant()

    with pytest.raises(NotOpenError) as exc:
        _service(db_session).submit(identity_for(user), DocumentRef(id=offering.id), "Draft")
    assert exc.value.details == {"reason": "calendar_inactive"}


def test_offering_closed_after_first_submit_blocks_updates(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)
    service.submit(identity_for(user), ref, "Draft")

    offering.is_open_for_apply = False
    db_session.commit()

    with pytest.raises(NotOpenError):
        service.submit(identity_for(user), ref, "Submitted")


class _ChangedBeforeLockStore(SqlAdmissionStore):
    """Applies an admin edit after the advisory read, right before the locked re-read."""

    def __init__(self, db, change):
        super().__init__(db)
        self.change = change

    @contextmanager
    def transaction(self, offering):
        self.change()
        with super().transaction(offering) as record:
            yield record


def _close_offering(db, offering):
    def change():
        offering.is_open_for_apply = False
        db.commit()

    return change


def _deactivate_calendar(db, offering):
    def change():
        offering.academic_calendar.is_active = False
        db.commit()

    return change


@pytest.mark.parametrize(
    "change, reason",
    [(_close_offering, "offering_closed"), (_deactivate_calendar, "calendar_inactive")],
)
def test_change_landing_after_advisory_check_still_rejects(seed, db_session, identity_for, change, reason):
    from backend.app.models.student_application import StudentApplication

    offering = seed.offering()
    user, _ = seed.applicant()
    store = _ChangedBeforeLockStore(db_session, change(db_session, offering))

    with pytest.raises(NotOpenError) as exc:
        ApplicationUpsertService(store).submit(identity_for(user), DocumentRef(id=offering.id), "Submitted")

    assert exc.value.details == {"reason": reason}
    assert db_session.query(StudentApplication).count() == 0


def test_unknown_offering(seed, db_session, identity_for):
    user, _ = seed.applicant()
    with pytest.raises(OfferingNotFoundError):
        _service(db_session).submit(identity_for(user), DocumentRef(id=9999), "Draft")


def test_user_without_profile_gets_profile_required(seed, db_session, identity_for):
    offering = seed.offering()
    user = seed.user()
    with pytest.raises(ProfileRequiredError):
        _service(db_session).submit(identity_for(user), DocumentRef(id=offering.id), "Draft")


def test_full_offering_rejects_new_applicant(seed, db_session, identity_for):
    offering = seed.offering(capacity=1)
    first_user, _ = seed.applicant()
    second_user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    service.submit(identity_for(first_user), ref, "Submitted")
    with pytest.raises(CapacityExceededError) as exc:
        service.submit(identity_for(second_user), ref, "Submitted")
    assert exc.value.details == {"capacity": 1, "used": 1}


def test_full_offering_still_accepts_existing_applicant(seed, db_session, identity_for):
    offering = seed.offering(capacity=1)
    user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    service.submit(identity_for(user), ref, "Draft")
    result = service.submit(identity_for(user), ref, "Submitted")
    assert result.created is False
    assert result.application.application_status == "Submitted"


def test_rejected_application_frees_its_seat(seed, db_session, identity_for):
    offering = seed.offering(capacity=1)
    first_user, _ = seed.applicant()
    second_user, _ = seed.applicant()
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    service.submit(identity_for(first_user), ref, "Submitted")
    service.submit(identity_for(first_user), ref, "Rejected")

    result = service.submit(identity_for(second_user), ref, "Submitted")
    assert result.created is True


def test_unlimited_capacity_never_rejects(seed, db_session, identity_for):
    offering = seed.offering(capacity=None)
    service = _service(db_session)
    ref = DocumentRef(id=offering.id)

    for _ in range(5):
        user, _ = seed.applicant()
        assert service.submit(identity_for(user), ref, "Submitted").created is True


def test_zero_capacity_rejects_everyone(seed, db_session, identity_for):
    offering = seed.offering(capacity=0)
    user, _ = seed.applicant()
    with pytest.raises(CapacityExceededError):
        _service(db_session).submit(identity_for(user), DocumentRef(id=offering.id), "Draft")


def test_racing_applicants_for_last_seat_admit_exactly_one(seed, session_factory, identity_for):
    offering = seed.offering(capacity=1)
    applicants = [seed.applicant()[0] for _ in range(4)]
    identities = [identity_for(u) for u in applicants]
    sessions = [session_factory() for _ in identities]
    ref = DocumentRef(id=offering.id)

    def attempt(i):
        try:
            return _service(sessions[i], lock_timeout_s=30).submit(identities[i], ref, "Submitted")
        except CapacityExceededError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(identities)) as pool:
        outcomes = list(pool.map(attempt, range(len(identities))))

    created = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, CapacityExceededError)]
    assert len(created) == 1
    assert len(rejected) == len(identities) - 1

    check = session_factory()
    assert SqlAdmissionStore(check).count_applications(ref) == 1


def test_concurrent_identical_submissions_leave_one_record(seed, session_factory, identity_for):
    offering = seed.offering(capacity=10)
    user, profile = seed.applicant()
    identity = identity_for(user)
    sessions = [session_factory() for _ in range(4)]
    ref = DocumentRef(id=offering.id)

    def attempt(session):
        return _service(session, lock_timeout_s=30).submit(identity, ref, "Submitted")

    with ThreadPoolExecutor(max_workers=len(sessions)) as pool:
        results = list(pool.map(attempt, sessions))

    assert sum(1 for r in results if r.created) == 1
    assert len({r.application.ref.id for r in results}) == 1

    check = session_factory()
    assert len(SqlAdmissionStore(check).list_applications(DocumentRef(id=profile.id))) == 1


def test_busy_offering_times_out_as_store_unavailable(seed, db_session, identity_for):
    from backend.app.services.offering_locks import offering_lock
    from backend.app.utils.error_handlers import StoreUnavailableError

    offering = seed.offering()
    user, _ = seed.applicant()
    service = _service(db_session, lock_timeout_s=0.05)

    held = DocumentRef(id=offering.id, document_id=offering.document_id)
    with offering_lock(held):
        with pytest.raises(StoreUnavailableError):
            service.submit(identity_for(user), DocumentRef(id=offering.id), "Draft")


def test_unique_conflict_from_another_writer_is_retried_as_update(seed, db_session, identity_for):
    offering = seed.offering()
    user, _ = seed.applicant()
    ref = DocumentRef(id=offering.id)
    first = _service(db_session).submit(identity_for(user), ref, "Draft")

    class _StaleLookupStore(SqlAdmissionStore):
        # Misses the existing row once, as if another process inserted it mid-flight.
        misses = 1

        def find_application(self, profile, offering):
            if self.misses:
                self.misses -= 1
                return None
            return super().find_application(profile, offering)

    result = ApplicationUpsertService(_StaleLookupStore(db_session)).submit(identity_for(user), ref, "Submitted")

    assert result.created is False
    assert result.application.ref.id == first.application.ref.id
    assert result.application.application_status == "Submitted"
