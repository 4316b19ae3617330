"""
Admission store backed by an external Strapi content backend.

Strapi v4 wraps records as `{"id": .., "attributes": {..}}` and relations as
`{"data": ..}`; v5 returns flat records with a `documentId`. Both shapes are
normalized here. Strapi has no unique constraint over (profile, offering) and
no row locks, so `transaction` only re-reads the offering; callers serialize
writers per offering themselves.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import httpx

from ..utils.error_handlers import StoreUnavailableError
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
from .application_status import REJECTED, normalize_status

logger = logging.getLogger(__name__)

# Keys under which Strapi deployments embed an offering's applications (or their count).
EMBEDDED_USAGE_KEYS = (
    "applications",
    "student_applications",
    "studentApplications",
    "applicants",
    "applicationsCount",
    "applicationCount",
    "currentApplications",
    "currentApplicants",
)

# Strapi attribute name -> our profile attribute name.
_PROFILE_ATTRIBUTE_NAMES = {
    "firstNameEn": "first_name",
    "fatherNameEn": "father_name",
    "grandFatherNameEn": "grand_father_name",
    "phoneNumber": "phone_number",
}


class StrapiError(RuntimeError):
    def __init__(self, *, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def _safe_truncate(s: str, n: int = 300) -> str:
    s = s or ""
    if len(s) <= n:
        return s
    return s[:n] + "…"


def normalize_entity(entity: Any) -> dict[str, Any] | None:
    if not isinstance(entity, dict):
        return None
    attributes = entity.get("attributes")
    if isinstance(attributes, dict):
        return {
            "id": entity.get("id"),
            "documentId": entity.get("documentId") or attributes.get("documentId"),
            **attributes,
        }
    return entity


def normalize_relation(relation: Any) -> Any:
    if isinstance(relation, dict) and "data" in relation:
        data = relation["data"]
        if isinstance(data, list):
            return [e for e in (normalize_entity(x) for x in data) if e]
        return normalize_entity(data)
    if isinstance(relation, list):
        return [e for e in (normalize_entity(x) for x in relation) if e]
    return normalize_entity(relation) if isinstance(relation, dict) else relation


def _to_int_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value.strip()))
        except ValueError:
            return None
    return None


def embedded_usage(entity: dict[str, Any]) -> int | None:
    """
    Seat usage embedded in an offering record: seat-holding entries of a
    relation list, or a scalar count. Rejected entries don't hold a seat.
    """
    for key in EMBEDDED_USAGE_KEYS:
        value = entity.get(key)
        if value is None or value == "":
            continue
        value = normalize_relation(value)
        if isinstance(value, list):
            return sum(1 for e in value if normalize_status(e.get("applicationStatus")) != REJECTED)
        count = _to_int_or_none(value)
        if count is not None:
            return max(count, 0)
    return None


def _parse_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def _entity_ref(entity: Any) -> DocumentRef | None:
    entity = normalize_entity(entity)
    if not entity:
        return None
    return DocumentRef.of(entity.get("id"), entity.get("documentId"))


def _collection(raw: Any) -> list[dict[str, Any]]:
    data = raw.get("data") if isinstance(raw, dict) else None
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = [data]
    else:
        items = []
    return [e for e in (normalize_entity(x) for x in items) if e]


def _offering_record(entity: dict[str, Any]) -> OfferingRecord | None:
    ref = _entity_ref(entity)
    if ref is None:
        return None
    calendar = normalize_relation(entity.get("academic_calendar"))
    calendar_ref = _entity_ref(calendar) if isinstance(calendar, dict) else None
    program = normalize_relation(entity.get("program"))
    batch = normalize_relation(entity.get("batch"))
    capacity = _to_int_or_none(entity.get("capacity"))
    return OfferingRecord(
        ref=ref,
        is_open_for_apply=bool(entity.get("isOpenForApply")),
        capacity=max(capacity, 0) if capacity is not None else None,
        calendar=CalendarRecord(
            ref=calendar_ref,
            is_active=bool(calendar.get("isActive")),
            name=calendar.get("name"),
            academic_year_range=calendar.get("academicYearRange"),
        )
        if calendar_ref
        else None,
        embedded_used=embedded_usage(entity),
        program=program if isinstance(program, dict) else None,
        batch=batch if isinstance(batch, dict) else None,
    )


def _profile_record(entity: dict[str, Any]) -> ProfileRecord | None:
    ref = _entity_ref(entity)
    if ref is None:
        return None
    user = normalize_relation(entity.get("user"))
    user = user if isinstance(user, dict) else None
    legacy = entity.get("userId")
    return ProfileRecord(
        ref=ref,
        user_ref=_entity_ref(user) if user else None,
        user_email=user.get("email") if user else None,
        email=entity.get("email"),
        legacy_user_id=str(legacy) if legacy not in (None, "") else None,
        attributes={ours: entity.get(theirs) for theirs, ours in _PROFILE_ATTRIBUTE_NAMES.items()},
        updated_at=_parse_datetime(entity.get("updatedAt")),
    )


def _application_record(entity: dict[str, Any]) -> ApplicationRecord | None:
    ref = _entity_ref(entity)
    if ref is None:
        return None
    return ApplicationRecord(
        ref=ref,
        profile_ref=_entity_ref(normalize_relation(entity.get("student_profile"))),
        offering_ref=_entity_ref(normalize_relation(entity.get("program_offering"))),
        calendar_ref=_entity_ref(normalize_relation(entity.get("academic_calendar"))),
        application_status=entity.get("applicationStatus") or "Draft",
        submitted_at=_parse_datetime(entity.get("submittedAt")),
        created_at=_parse_datetime(entity.get("createdAt")),
    )


def _ref_filter(prefix: str, ref: DocumentRef) -> tuple[str, str]:
    if ref.uses_document_id:
        return (f"{prefix}[documentId][$eq]", ref.document_id)
    return (f"{prefix}[id][$eq]", str(ref.id))


class StrapiAdmissionStore(AdmissionStore):
    PAGE_SIZE = 100
    MAX_PAGES = 50

    def __init__(self, client: httpx.Client, *, api_token: str | None = None):
        self.client = client
        self.api_token = api_token

    def _request(self, method: str, path: str, *, params=None, json: Any = None) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        try:
            r = self.client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Strapi timeout on {method} {path}: {e}")
            raise StoreUnavailableError() from e
        except httpx.HTTPError as e:
            logger.error(f"Strapi transport error on {method} {path}: {e}")
            raise StoreUnavailableError() from e

        if r.status_code >= 500:
            logger.error("Strapi %s %s -> %s: %s", method, path, r.status_code, _safe_truncate(r.text))
            raise StoreUnavailableError()
        if r.status_code >= 400:
            raise StrapiError(status_code=r.status_code, message=_safe_truncate(r.text))
        try:
            data = r.json()
        except ValueError:
            data = {}
        return data if isinstance(data, dict) else {}

    def _all_pages(self, path: str, params: list[tuple[str, str]]) -> list[dict[str, Any]]:
        """Every record of a list query, following meta.pagination page by page."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            paged = [*params, ("pagination[page]", str(page)), ("pagination[pageSize]", str(self.PAGE_SIZE))]
            raw = self._request("GET", path, params=paged)
            batch = _collection(raw)
            items.extend(batch)
            pagination = (raw.get("meta") or {}).get("pagination") or {}
            page_count = _to_int_or_none(pagination.get("pageCount")) or 1
            if not batch or page >= page_count:
                return items
            if page >= self.MAX_PAGES:
                logger.warning("%s has %s pages; stopped after %s", path, page_count, self.MAX_PAGES)
                return items
            page += 1

    # -------------------- offerings --------------------

    _OFFERING_POPULATE = [
        ("populate[academic_calendar][fields][0]", "documentId"),
        ("populate[academic_calendar][fields][1]", "isActive"),
        ("populate[academic_calendar][fields][2]", "name"),
        ("populate[academic_calendar][fields][3]", "academicYearRange"),
        ("populate[program]", "true"),
        ("populate[batch]", "true"),
    ]

    def get_offering(self, ref: DocumentRef) -> OfferingRecord | None:
        params = [_ref_filter("filters", ref), *self._OFFERING_POPULATE, ("pagination[pageSize]", "1")]
        try:
            raw = self._request("GET", "/api/program-offerings", params=params)
        except StrapiError as e:
            logger.warning("Program offering lookup %s failed: %s", ref.key, e)
            return None
        items = _collection(raw)
        return _offering_record(items[0]) if items else None

    def list_open_offerings(self) -> list[OfferingRecord]:
        params = [
            ("filters[isOpenForApply][$eq]", "true"),
            ("filters[academic_calendar][isActive][$eq]", "true"),
            ("populate", "*"),
            ("sort[0]", "id:asc"),
        ]
        return [r for r in (_offering_record(e) for e in self._all_pages("/api/program-offerings", params)) if r]

    # -------------------- applications --------------------

    def count_applications(self, offering: DocumentRef) -> int:
        params = [
            _ref_filter("filters[program_offering]", offering),
            ("filters[applicationStatus][$ne]", REJECTED),
            ("pagination[pageSize]", "1"),
        ]
        try:
            raw = self._request("GET", "/api/student-applications", params=params)
        except StrapiError as e:
            # A count we can't read is an outage from the caller's point of view.
            raise StoreUnavailableError() from e
        total = ((raw.get("meta") or {}).get("pagination") or {}).get("total")
        return _to_int_or_none(total) or 0

    _APPLICATION_POPULATE = [
        ("populate[student_profile][fields][0]", "documentId"),
        ("populate[program_offering][fields][0]", "documentId"),
        ("populate[academic_calendar][fields][0]", "documentId"),
    ]

    def find_application(self, profile: DocumentRef, offering: DocumentRef) -> ApplicationRecord | None:
        params = [
            _ref_filter("filters[student_profile]", profile),
            _ref_filter("filters[program_offering]", offering),
            *self._APPLICATION_POPULATE,
            ("sort[0]", "createdAt:asc"),
            ("pagination[pageSize]", "1"),
        ]
        try:
            raw = self._request("GET", "/api/student-applications", params=params)
        except StrapiError as e:
            raise StoreUnavailableError() from e
        items = _collection(raw)
        return _application_record(items[0]) if items else None

    def list_applications(self, profile: DocumentRef) -> list[ApplicationRecord]:
        params = [
            _ref_filter("filters[student_profile]", profile),
            *self._APPLICATION_POPULATE,
            ("sort[0]", "createdAt:desc"),
        ]
        items = self._all_pages("/api/student-applications", params)
        return [r for r in (_application_record(e) for e in items) if r]

    @staticmethod
    def _write_payload(write: ApplicationWrite) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "applicationStatus": write.application_status,
            "student_profile": write.student_profile.preferred(),
            "program_offering": write.program_offering.preferred(),
        }
        if write.submitted_at is not None:
            payload["submittedAt"] = write.submitted_at.isoformat()
        if write.academic_calendar is not None:
            payload["academic_calendar"] = write.academic_calendar.preferred()
        return {"data": payload}

    def _written(self, raw: dict[str, Any], write: ApplicationWrite) -> ApplicationRecord:
        items = _collection(raw)
        record = _application_record(items[0]) if items else None
        if record is None:
            raise StoreUnavailableError("Strapi returned no application record")
        # Write responses don't populate relations; fill them from what we sent.
        return ApplicationRecord(
            ref=record.ref,
            profile_ref=record.profile_ref or write.student_profile,
            offering_ref=record.offering_ref or write.program_offering,
            calendar_ref=record.calendar_ref or write.academic_calendar,
            application_status=record.application_status,
            submitted_at=record.submitted_at or write.submitted_at,
            created_at=record.created_at,
        )

    def create_application(self, write: ApplicationWrite) -> ApplicationRecord:
        try:
            raw = self._request("POST", "/api/student-applications", json=self._write_payload(write))
        except StrapiError as e:
            logger.error("Creating application failed: %s", e)
            raise StoreUnavailableError() from e
        return self._written(raw, write)

    def update_application(self, ref: DocumentRef, write: ApplicationWrite) -> ApplicationRecord:
        try:
            raw = self._request("PUT", f"/api/student-applications/{ref.preferred()}", json=self._write_payload(write))
        except StrapiError as e:
            logger.error("Updating application %s failed: %s", ref.key, e)
            raise StoreUnavailableError() from e
        return self._written(raw, write)

    # -------------------- profiles --------------------

    def find_profiles(self, field_name: str, value: Any) -> list[ProfileRecord]:
        if field_name == PROFILE_BY_USER:
            if not isinstance(value, DocumentRef):
                return []
            where = _ref_filter("filters[user]", value)
        elif field_name == PROFILE_BY_EMAIL:
            if not value:
                return []
            where = ("filters[email][$eqi]", str(value).strip())
        elif field_name == PROFILE_BY_LEGACY_USER_ID:
            if value is None or str(value).strip() == "":
                return []
            where = ("filters[userId][$eq]", str(value).strip())
        elif field_name == PROFILE_BY_USER_EMAIL:
            if not value:
                return []
            where = ("filters[user][email][$eqi]", str(value).strip())
        else:
            raise ValueError(f"Unknown profile field: {field_name}")

        params = [
            where,
            ("populate[user][fields][0]", "id"),
            ("populate[user][fields][1]", "documentId"),
            ("populate[user][fields][2]", "email"),
            ("sort[0]", "updatedAt:desc"),
            ("sort[1]", "createdAt:desc"),
            ("pagination[pageSize]", "10"),
        ]
        try:
            raw = self._request("GET", "/api/student-profiles", params=params)
        except StrapiError as e:
            # Some schemas don't have the legacy fields; that strategy simply can't match.
            if e.status_code == 400:
                logger.info("Profile lookup by %s not supported by backend: %s", field_name, e)
                return []
            raise StoreUnavailableError() from e
        return [r for r in (_profile_record(e) for e in _collection(raw)) if r]

    def save_profile(self, identity, attributes: dict[str, Any], existing: ProfileRecord | None) -> ProfileRecord:
        theirs = {v: k for k, v in _PROFILE_ATTRIBUTE_NAMES.items()}
        data = {theirs[name]: attributes[name] for name in EDITABLE_PROFILE_FIELDS if name in attributes}
        if existing is None or existing.user_ref is None:
            data["user"] = identity.user_document_id or identity.user_id
        try:
            if existing is not None:
                raw = self._request("PUT", f"/api/student-profiles/{existing.ref.preferred()}", json={"data": data})
            else:
                raw = self._request("POST", "/api/student-profiles", json={"data": data})
        except StrapiError as e:
            logger.error("Saving student profile failed: %s", e)
            raise StoreUnavailableError() from e
        items = _collection(raw)
        record = _profile_record(items[0]) if items else None
        if record is None:
            raise StoreUnavailableError("Strapi returned no profile record")
        return record

    # -------------------- write scope --------------------

    @contextmanager
    def transaction(self, offering: DocumentRef) -> Iterator[OfferingRecord | None]:
        # No store-side locking or rollback; writes inside are single requests.
        yield self.get_offering(offering)


_client: httpx.Client | None = None


def get_strapi_client(base_url: str, timeout_s: float) -> httpx.Client:
    """Process-wide client so connections are pooled across requests."""
    global _client
    if _client is None:
        _client = httpx.Client(base_url=base_url, timeout=timeout_s)
    return _client
