"""
Admission store contract.

The admission core only talks to its backing store through `AdmissionStore`.
Two implementations exist: `SqlAdmissionStore` (records in our own database)
and `StrapiAdmissionStore` (an external Strapi content backend over REST).

Store methods raise `StoreUnavailableError` on transport/backend failures and
`DuplicateApplicationError` when the store itself rejects a second application
for the same (profile, offering) pair.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..utils.references import DocumentRef

# Profile linkage fields, in the shape `find_profiles` accepts.
PROFILE_BY_USER = "user"
PROFILE_BY_EMAIL = "email"
PROFILE_BY_LEGACY_USER_ID = "legacy_user_id"
PROFILE_BY_USER_EMAIL = "user.email"

# Profile attributes a user may edit on their own profile.
EDITABLE_PROFILE_FIELDS = ("first_name", "father_name", "grand_father_name", "phone_number")


@dataclass(frozen=True)
class CalendarRecord:
    ref: DocumentRef
    is_active: bool
    name: str | None = None
    academic_year_range: str | None = None


@dataclass(frozen=True)
class OfferingRecord:
    ref: DocumentRef
    is_open_for_apply: bool
    capacity: int | None
    calendar: CalendarRecord | None
    # Application count embedded in the record by the store, when it has one.
    embedded_used: int | None = None
    program: dict[str, Any] | None = None
    batch: dict[str, Any] | None = None


@dataclass(frozen=True)
class ProfileRecord:
    ref: DocumentRef
    user_ref: DocumentRef | None = None
    user_email: str | None = None
    email: str | None = None
    legacy_user_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ApplicationRecord:
    ref: DocumentRef
    profile_ref: DocumentRef | None
    offering_ref: DocumentRef | None
    calendar_ref: DocumentRef | None
    application_status: str
    submitted_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ApplicationWrite:
    application_status: str
    submitted_at: datetime | None
    student_profile: DocumentRef
    program_offering: DocumentRef
    academic_calendar: DocumentRef | None


class AdmissionStore(ABC):
    @abstractmethod
    def get_offering(self, ref: DocumentRef) -> OfferingRecord | None:
        ...

    @abstractmethod
    def list_open_offerings(self) -> list[OfferingRecord]:
        """Offerings flagged open whose calendar is active. Capacity is not applied here."""

    @abstractmethod
    def count_applications(self, offering: DocumentRef) -> int:
        """Seat-holding (non-rejected) applications on an offering."""

    @abstractmethod
    def find_application(self, profile: DocumentRef, offering: DocumentRef) -> ApplicationRecord | None:
        ...

    @abstractmethod
    def list_applications(self, profile: DocumentRef) -> list[ApplicationRecord]:
        ...

    @abstractmethod
    def create_application(self, write: ApplicationWrite) -> ApplicationRecord:
        ...

    @abstractmethod
    def update_application(self, ref: DocumentRef, write: ApplicationWrite) -> ApplicationRecord:
        ...

    @abstractmethod
    def find_profiles(self, field_name: str, value: Any) -> list[ProfileRecord]:
        """Profiles matching one linkage field, newest first."""

    @abstractmethod
    def save_profile(self, identity, attributes: dict[str, Any], existing: ProfileRecord | None) -> ProfileRecord:
        """Create the caller's profile linked to their user, or update `existing`."""

    @abstractmethod
    def transaction(self, offering: DocumentRef) -> AbstractContextManager[OfferingRecord | None]:
        """
        Open the write scope for one offering.

        Yields the offering re-read under the strongest lock the store offers
        (None if it disappeared). Writes made inside the scope are committed
        together on exit and discarded on error.
        """
