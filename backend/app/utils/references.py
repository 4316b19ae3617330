"""
Record references.

Every record in the admission store has a numeric `id` and a stable
`document_id`. Numeric ids can be re-assigned when the store is re-imported, so
lookups prefer the document id and fall back to the numeric id.
"""
from dataclasses import dataclass
from typing import Any

from .error_handlers import InvalidReferenceError

# Record ids are 32-bit INTEGER columns.
MAX_RECORD_ID = 2**31 - 1


@dataclass(frozen=True)
class DocumentRef:
    id: int | None = None
    document_id: str | None = None

    def __post_init__(self) -> None:
        if self.id is None and not self.document_id:
            raise InvalidReferenceError("Reference needs an id or a document id")
        if self.id is not None and self.id > MAX_RECORD_ID:
            raise InvalidReferenceError("Reference id is out of range")

    def preferred(self) -> int | str:
        """The form to query by: document id when known, else numeric id."""
        return self.document_id if self.document_id else int(self.id)

    @property
    def uses_document_id(self) -> bool:
        return bool(self.document_id)

    @property
    def key(self) -> str:
        # Stable string form, used for lock names and logs.
        return f"doc:{self.document_id}" if self.document_id else f"id:{self.id}"

    @classmethod
    def of(cls, id: Any = None, document_id: Any = None) -> "DocumentRef | None":
        """Build a ref from loosely typed record fields; None when both are missing."""
        num = _to_int_or_none(id)
        doc = document_id.strip() if isinstance(document_id, str) and document_id.strip() else None
        if num is None and doc is None:
            return None
        return cls(id=num, document_id=doc)


def _to_int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _checked_id(num: int | None, field_name: str) -> int:
    if num is None or num <= 0:
        raise InvalidReferenceError(f"{field_name} id must be a positive integer")
    if num > MAX_RECORD_ID:
        raise InvalidReferenceError(f"{field_name} id is out of range")
    return num


def parse_reference(raw: Any, field_name: str = "Program offering") -> DocumentRef:
    """
    Parse a client-supplied reference.

    Accepts a positive integer, a numeric string (numeric id) or any other
    non-empty string (document id). Anything else is an InvalidReferenceError.
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidReferenceError(f"{field_name} is required")

    if isinstance(raw, (int, float)):
        return DocumentRef(id=_checked_id(_to_int_or_none(raw), field_name))

    if isinstance(raw, str):
        value = raw.strip()
        if not value:
            raise InvalidReferenceError(f"{field_name} is required")
        num = _to_int_or_none(value)
        if num is not None:
            return DocumentRef(id=_checked_id(num, field_name))
        if len(value) > 64 or any(ch.isspace() or ch in "/?#&" for ch in value):
            raise InvalidReferenceError(f"{field_name} reference is malformed")
        return DocumentRef(document_id=value)

    if isinstance(raw, dict):
        ref = DocumentRef.of(raw.get("id"), raw.get("documentId"))
        if ref is None:
            raise InvalidReferenceError(f"{field_name} reference is malformed")
        if not ref.uses_document_id:
            _checked_id(ref.id, field_name)
        return ref

    raise InvalidReferenceError(f"{field_name} reference is malformed")
