import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, joinedload

from ..models.academic_calendar import AcademicCalendar
from ..models.program_offering import ProgramOffering
from ..models.student_application import StudentApplication
from ..models.student_profile import StudentProfile
from ..models.user import User
from ..utils.error_handlers import (
    ConflictError,
    DuplicateApplicationError,
    InvalidReferenceError,
    StoreUnavailableError,
    get_error_message,
)
from ..utils.references import DocumentRef
from .admission_store import (
    EDITABLE_PROFILE_FIELDS,
    PROFILE_BY_EMAIL,
    PROFILE_BY_LEGACY_USER_ID,
    PROFILE_BY_USER,
    PROFILE_BY_USER_EMAIL,
    AdmissionStore,
    ApplicationRecord,
    ApplicationWrite,
    CalendarRecord,
    OfferingRecord,
    ProfileRecord,
)
from .application_status import SEAT_HOLDING_STATUSES

logger = logging.getLogger(__name__)


@contextmanager
def _db_errors(operation: str, on_integrity=DuplicateApplicationError) -> Iterator[None]:
    try:
        yield
    except IntegrityError as e:
        logger.warning("Integrity error during %s: %s", operation, getattr(e, "orig", e))
        raise on_integrity() from e
    except OperationalError as e:
        logger.error(f"Database unavailable during {operation}: {e}")
        raise StoreUnavailableError(get_error_message("database_error")) from e


def _ref(obj: Any) -> DocumentRef:
    return DocumentRef(id=int(obj.id), document_id=obj.document_id)


def _ref_filter(model, ref: DocumentRef):
    if ref.uses_document_id:
        return model.document_id == ref.document_id
    return model.id == int(ref.id)


def _calendar_record(calendar: AcademicCalendar | None) -> CalendarRecord | None:
    if calendar is None:
        return None
    return CalendarRecord(
        ref=_ref(calendar),
        is_active=bool(calendar.is_active),
        name=calendar.name,
        academic_year_range=calendar.academic_year_range,
    )


def _offering_record(offering: ProgramOffering) -> OfferingRecord:
    program = offering.program
    batch = offering.batch
    return OfferingRecord(
        ref=_ref(offering),
        is_open_for_apply=bool(offering.is_open_for_apply),
        capacity=int(offering.capacity) if offering.capacity is not None else None,
        calendar=_calendar_record(offering.academic_calendar),
        program={
            "id": program.id,
            "documentId": program.document_id,
            "name": program.name,
            "fullName": program.full_name,
            "level": program.level,
            "mode": program.mode,
        }
        if program
        else None,
        batch={"id": batch.id, "documentId": batch.document_id, "name": batch.name, "code": batch.code}
        if batch
        else None,
    )


def _profile_record(profile: StudentProfile) -> ProfileRecord:
    user = profile.user
    return ProfileRecord(
        ref=_ref(profile),
        user_ref=_ref(user) if user else None,
        user_email=user.email if user else None,
        email=profile.email,
        legacy_user_id=profile.legacy_user_id,
        attributes={name: getattr(profile, name) for name in EDITABLE_PROFILE_FIELDS},
        updated_at=profile.updated_at,
    )


def _application_record(application: StudentApplication) -> ApplicationRecord:
    return ApplicationRecord(
        ref=_ref(application),
        profile_ref=_ref(application.student_profile) if application.student_profile else None,
        offering_ref=_ref(application.program_offering) if application.program_offering else None,
        calendar_ref=_ref(application.academic_calendar) if application.academic_calendar else None,
        application_status=application.application_status,
        submitted_at=application.submitted_at,
        created_at=application.created_at,
    )


class SqlAdmissionStore(AdmissionStore):
    """Admission store backed by the service's own database."""

    def __init__(self, db: Session):
        self.db = db

    # -------------------- offerings --------------------

    def _offering_query(self):
        return self.db.query(ProgramOffering).options(
            joinedload(ProgramOffering.academic_calendar),
            joinedload(ProgramOffering.program),
            joinedload(ProgramOffering.batch),
        )

    def get_offering(self, ref: DocumentRef) -> OfferingRecord | None:
        with _db_errors("fetching program offering"):
            offering = self._offering_query().filter(_ref_filter(ProgramOffering, ref)).first()
            return _offering_record(offering) if offering else None

    def list_open_offerings(self) -> list[OfferingRecord]:
        with _db_errors("listing program offerings"):
            rows = (
                self._offering_query()
                .join(AcademicCalendar, ProgramOffering.academic_calendar_id == AcademicCalendar.id)
                .filter(ProgramOffering.is_open_for_apply.is_(True), AcademicCalendar.is_active.is_(True))
                .order_by(ProgramOffering.id.asc())
                .all()
            )
            return [_offering_record(o) for o in rows]

    # -------------------- applications --------------------

    def count_applications(self, offering: DocumentRef) -> int:
        with _db_errors("counting applications"):
            q = (
                self.db.query(func.count(StudentApplication.id))
                .join(ProgramOffering, StudentApplication.program_offering_id == ProgramOffering.id)
                .filter(
                    _ref_filter(ProgramOffering, offering),
                    StudentApplication.application_status.in_(sorted(SEAT_HOLDING_STATUSES)),
                )
            )
            return int(q.scalar() or 0)

    def _application_query(self):
        return (
            self.db.query(StudentApplication)
            .join(StudentProfile, StudentApplication.student_profile_id == StudentProfile.id)
            .join(ProgramOffering, StudentApplication.program_offering_id == ProgramOffering.id)
        )

    def find_application(self, profile: DocumentRef, offering: DocumentRef) -> ApplicationRecord | None:
        with _db_errors("looking up application"):
            application = (
                self._application_query()
                .filter(_ref_filter(StudentProfile, profile), _ref_filter(ProgramOffering, offering))
                .order_by(StudentApplication.id.asc())
                .first()
            )
            return _application_record(application) if application else None

    def list_applications(self, profile: DocumentRef) -> list[ApplicationRecord]:
        with _db_errors("listing applications"):
            rows = (
                self._application_query()
                .filter(_ref_filter(StudentProfile, profile))
                .order_by(StudentApplication.id.desc())
                .all()
            )
            return [_application_record(a) for a in rows]

    def _resolve_id(self, model, ref: DocumentRef | None, label: str) -> int | None:
        if ref is None:
            return None
        if not ref.uses_document_id:
            return int(ref.id)
        row_id = self.db.query(model.id).filter(model.document_id == ref.document_id).scalar()
        if row_id is None:
            raise InvalidReferenceError(f"{label} {ref.document_id} does not exist")
        return int(row_id)

    def _apply_write(self, application: StudentApplication, write: ApplicationWrite) -> None:
        application.student_profile_id = self._resolve_id(StudentProfile, write.student_profile, "Student profile")
        application.program_offering_id = self._resolve_id(ProgramOffering, write.program_offering, "Program offering")
        application.academic_calendar_id = self._resolve_id(
            AcademicCalendar, write.academic_calendar, "Academic calendar"
        )
        application.application_status = write.application_status
        application.submitted_at = write.submitted_at

    def create_application(self, write: ApplicationWrite) -> ApplicationRecord:
        with _db_errors("creating application"):
            application = StudentApplication()
            self._apply_write(application, write)
            self.db.add(application)
            self.db.flush()
            self.db.refresh(application)
            return _application_record(application)

    def update_application(self, ref: DocumentRef, write: ApplicationWrite) -> ApplicationRecord:
        with _db_errors("updating application"):
            application = self.db.query(StudentApplication).filter(_ref_filter(StudentApplication, ref)).first()
            if application is None:
                raise InvalidReferenceError(f"Application {ref.key} does not exist")
            self._apply_write(application, write)
            self.db.flush()
            self.db.refresh(application)
            return _application_record(application)

    # -------------------- profiles --------------------

    def find_profiles(self, field_name: str, value: Any) -> list[ProfileRecord]:
        q = self.db.query(StudentProfile).options(joinedload(StudentProfile.user))
        if field_name == PROFILE_BY_USER:
            if not isinstance(value, DocumentRef):
                return []
            if value.uses_document_id:
                q = q.join(User, StudentProfile.user_id == User.id).filter(User.document_id == value.document_id)
            else:
                q = q.filter(StudentProfile.user_id == int(value.id))
        elif field_name == PROFILE_BY_EMAIL:
            if not value:
                return []
            q = q.filter(func.lower(StudentProfile.email) == str(value).strip().lower())
        elif field_name == PROFILE_BY_LEGACY_USER_ID:
            if value is None or str(value).strip() == "":
                return []
            q = q.filter(StudentProfile.legacy_user_id == str(value).strip())
        elif field_name == PROFILE_BY_USER_EMAIL:
            if not value:
                return []
            q = q.join(User, StudentProfile.user_id == User.id).filter(
                func.lower(User.email) == str(value).strip().lower()
            )
        else:
            raise ValueError(f"Unknown profile field: {field_name}")

        with _db_errors("looking up student profile"):
            rows = q.order_by(StudentProfile.updated_at.desc(), StudentProfile.id.desc()).all()
            return [_profile_record(p) for p in rows]

    def _find_or_create_user(self, identity) -> User:
        user = None
        if identity.user_document_id:
            user = self.db.query(User).filter(User.document_id == identity.user_document_id).first()
        if user is None:
            user = self.db.query(User).filter(User.id == int(identity.user_id)).first()
        if user:
            return user

        user = User(id=int(identity.user_id), email=identity.email)
        if identity.user_document_id:
            user.document_id = identity.user_document_id
        self.db.add(user)
        self.db.flush()
        return user

    def save_profile(self, identity, attributes: dict[str, Any], existing: ProfileRecord | None) -> ProfileRecord:
        try:
            with _db_errors("saving student profile", on_integrity=ConflictError):
                if existing is not None:
                    profile = self.db.query(StudentProfile).filter(_ref_filter(StudentProfile, existing.ref)).first()
                else:
                    profile = None

                if profile is None:
                    user = self._find_or_create_user(identity)
                    profile = StudentProfile(user_id=user.id, email=identity.email)
                    self.db.add(profile)
                elif profile.user_id is None:
                    # Legacy record matched by email / legacy id: attach the relation now.
                    profile.user_id = self._find_or_create_user(identity).id

                for name in EDITABLE_PROFILE_FIELDS:
                    if name in attributes:
                        setattr(profile, name, attributes[name])

                self.db.commit()
                self.db.refresh(profile)
                return _profile_record(profile)
        except Exception:
            self.db.rollback()
            raise

    # -------------------- write scope --------------------

    @contextmanager
    def transaction(self, offering: DocumentRef) -> Iterator[OfferingRecord | None]:
        # Advisory reads may have left a transaction open; start from committed state.
        self.db.rollback()
        try:
            with _db_errors("locking program offering"):
                # Row lock serializes writers across processes (no-op on SQLite).
                row = (
                    self.db.query(ProgramOffering)
                    .filter(_ref_filter(ProgramOffering, offering))
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                record = _offering_record(row) if row else None
            yield record
            with _db_errors("committing application"):
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
