"""
Resolve the applicant profile that belongs to an authenticated user.

Older profiles were imported before profiles had a user relation, so several
linkage strategies are tried in priority order and the first one that matches
wins. Within a strategy the store returns candidates newest first, so duplicate
profiles resolve deterministically.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..utils.dependencies import UserIdentity
from ..utils.references import DocumentRef
from .admission_store import (
    PROFILE_BY_EMAIL,
    PROFILE_BY_LEGACY_USER_ID,
    PROFILE_BY_USER,
    PROFILE_BY_USER_EMAIL,
    AdmissionStore,
    ProfileRecord,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileMatcher:
    name: str
    field_name: str
    value_for: Callable[[UserIdentity], Any]


def _user_ref(identity: UserIdentity) -> DocumentRef:
    return DocumentRef(id=identity.user_id, document_id=identity.user_document_id)


def _legacy_user_id(identity: UserIdentity) -> str:
    return str(identity.user_id)


def _email(identity: UserIdentity) -> str | None:
    return identity.email


DEFAULT_MATCHERS: tuple[ProfileMatcher, ...] = (
    ProfileMatcher("user relation", PROFILE_BY_USER, _user_ref),
    ProfileMatcher("profile email", PROFILE_BY_EMAIL, _email),
    ProfileMatcher("legacy user id", PROFILE_BY_LEGACY_USER_ID, _legacy_user_id),
    ProfileMatcher("user email", PROFILE_BY_USER_EMAIL, _email),
)


class ProfileResolver:
    def __init__(self, store: AdmissionStore, matchers: tuple[ProfileMatcher, ...] = DEFAULT_MATCHERS):
        self.store = store
        self.matchers = matchers

    def resolve_for_user(self, identity: UserIdentity) -> ProfileRecord | None:
        """
        The caller's profile, or None if they have to create one first.
        Store failures propagate; they are not "no profile".
        """
        for matcher in self.matchers:
            value = matcher.value_for(identity)
            if value is None or value == "":
                continue
            matches = self.store.find_profiles(matcher.field_name, value)
            if matches:
                if len(matches) > 1:
                    logger.warning(
                        "User %s has %d profiles by %s; using %s",
                        identity.user_id,
                        len(matches),
                        matcher.name,
                        matches[0].ref.key,
                    )
                return matches[0]
        return None
