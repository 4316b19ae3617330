from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
import logging

from ..services.admission_store import AdmissionStore, ProfileRecord
from ..services.profile_resolver import ProfileResolver
from ..utils.dependencies import UserIdentity, get_admission_store, get_current_user
from ..utils.error_handlers import ProfileRequiredError, ValidationError
from ..utils.validation import validate_string_field

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/student-profiles", tags=["Student Profiles"])


class StudentProfileData(BaseModel):
    first_name: str | None = None
    father_name: str | None = None
    grand_father_name: str | None = None
    phone_number: str | None = None


class StudentProfileRequest(BaseModel):
    data: StudentProfileData | None = None


def _profile_payload(profile: ProfileRecord) -> dict:
    return {
        "id": profile.ref.id,
        "documentId": profile.ref.document_id,
        "email": profile.email,
        "user": {"id": profile.user_ref.id, "documentId": profile.user_ref.document_id}
        if profile.user_ref
        else None,
        **profile.attributes,
    }


@router.get("/me")
def my_profile(
    store: AdmissionStore = Depends(get_admission_store),
    user: UserIdentity = Depends(get_current_user),
):
    profile = ProfileResolver(store).resolve_for_user(user)
    if profile is None:
        raise ProfileRequiredError()
    return {"success": True, "profile": _profile_payload(profile)}


@router.post("")
def save_my_profile(
    payload: StudentProfileRequest,
    response: Response,
    store: AdmissionStore = Depends(get_admission_store),
    user: UserIdentity = Depends(get_current_user),
):
    if payload.data is None:
        raise ValidationError("Invalid request body")

    attributes = {}
    for name, value in payload.data.model_dump(exclude_unset=True).items():
        label = name.replace("_", " ").capitalize()
        max_length = 30 if name == "phone_number" else 100
        attributes[name] = validate_string_field(value, label, max_length=max_length, required=False)

    # Update the profile we'd resolve for this user rather than creating a duplicate.
    existing = ProfileResolver(store).resolve_for_user(user)
    profile = store.save_profile(user, attributes, existing)
    response.status_code = 200 if existing else 201
    logger.info("Student profile %s %s for user %s", profile.ref.key, "updated" if existing else "created", user.user_id)
    return {"success": True, "created": existing is None, "profile": _profile_payload(profile)}
