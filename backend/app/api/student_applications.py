from datetime import datetime
from typing import Any
import logging

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from ..config import CAPACITY_FAIL_OPEN, SUBMISSION_LOCK_TIMEOUT_S
from ..services.admission_store import AdmissionStore, ApplicationRecord
from ..services.application_upsert import ApplicationUpsertService
from ..services.capacity import CapacityResolver
from ..services.profile_resolver import ProfileResolver
from ..utils.dependencies import UserIdentity, get_admission_store, get_current_user
from ..utils.error_handlers import ProfileRequiredError, ValidationError
from ..utils.references import DocumentRef, parse_reference
from ..utils.validation import validate_application_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/student-applications", tags=["Student Applications"])


class StudentApplicationData(BaseModel):
    # Numeric id, numeric string or document id; parsed by parse_reference.
    programOfferingId: Any = None
    applicationStatus: Any = None


class StudentApplicationRequest(BaseModel):
    data: StudentApplicationData | None = None


def _ref_payload(ref: DocumentRef | None) -> dict | None:
    if ref is None:
        return None
    return {"id": ref.id, "documentId": ref.document_id}


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _application_payload(application: ApplicationRecord) -> dict:
    return {
        "id": application.ref.id,
        "documentId": application.ref.document_id,
        "applicationStatus": application.application_status,
        "submittedAt": _iso(application.submitted_at),
        "createdAt": _iso(application.created_at),
        "student_profile": _ref_payload(application.profile_ref),
        "program_offering": _ref_payload(application.offering_ref),
        "academic_calendar": _ref_payload(application.calendar_ref),
    }


@router.post("")
def submit_application(
    payload: StudentApplicationRequest,
    response: Response,
    store: AdmissionStore = Depends(get_admission_store),
    user: UserIdentity = Depends(get_current_user),
):
    if payload.data is None:
        raise ValidationError("Invalid request body")

    offering_ref = parse_reference(payload.data.programOfferingId)
    status = validate_application_status(payload.data.applicationStatus)

    service = ApplicationUpsertService(
        store,
        capacity=CapacityResolver(store, fail_open=CAPACITY_FAIL_OPEN),
        lock_timeout_s=SUBMISSION_LOCK_TIMEOUT_S,
    )
    result = service.submit(user, offering_ref, status)

    response.status_code = 201 if result.created else 200
    return {
        "success": True,
        "created": result.created,
        "application": _application_payload(result.application),
    }


@router.get("/mine")
def list_my_applications(
    store: AdmissionStore = Depends(get_admission_store),
    user: UserIdentity = Depends(get_current_user),
):
    profile = ProfileResolver(store).resolve_for_user(user)
    if profile is None:
        raise ProfileRequiredError()
    items = [_application_payload(a) for a in store.list_applications(profile.ref)]
    return {"success": True, "applications": items}
