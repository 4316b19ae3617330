from dataclasses import dataclass

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ..config import ADMISSION_STORE, STORE_TIMEOUT_S, STRAPI_API_TOKEN, STRAPI_URL
from ..database import get_db
from ..services.admission_store import AdmissionStore
from ..services.sql_store import SqlAdmissionStore
from ..services.strapi_store import StrapiAdmissionStore, get_strapi_client
from .error_handlers import StoreUnavailableError, UnauthorizedError, get_error_message
from .jwt import decode_access_token
from .references import MAX_RECORD_ID


@dataclass(frozen=True)
class UserIdentity:
    """The authenticated caller as described by the identity provider's token."""

    user_id: int
    email: str | None = None
    user_document_id: str | None = None


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise UnauthorizedError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError()
    return token.strip()


def get_current_user(authorization: str | None = Header(default=None)) -> UserIdentity:
    payload = decode_access_token(_bearer_token(authorization))

    raw_sub = str(payload.get("sub") or "").strip()
    try:
        user_id = int(raw_sub)
    except ValueError:
        raise UnauthorizedError(get_error_message("session_invalid"))
    if user_id <= 0 or user_id > MAX_RECORD_ID:
        raise UnauthorizedError(get_error_message("session_invalid"))

    email = payload.get("email")
    email = email.strip().lower() if isinstance(email, str) and email.strip() else None
    uid = payload.get("uid")
    uid = uid.strip() if isinstance(uid, str) and uid.strip() else None

    return UserIdentity(user_id=user_id, email=email, user_document_id=uid)


def get_admission_store(db: Session = Depends(get_db)) -> AdmissionStore:
    if ADMISSION_STORE == "strapi":
        if not STRAPI_URL:
            raise StoreUnavailableError("Strapi API is not configured")
        client = get_strapi_client(STRAPI_URL, STORE_TIMEOUT_S)
        return StrapiAdmissionStore(client, api_token=STRAPI_API_TOKEN)
    return SqlAdmissionStore(db)
