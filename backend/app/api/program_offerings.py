import logging

from fastapi import APIRouter, Depends

from ..config import CAPACITY_FAIL_OPEN
from ..services.admission_store import AdmissionStore, OfferingRecord
from ..services.capacity import CapacityResolver, CapacityView
from ..services.eligibility import ineligibility
from ..utils.dependencies import get_admission_store
from ..utils.error_handlers import OfferingNotFoundError
from ..utils.references import parse_reference

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/program-offerings", tags=["Program Offerings"])


def _offering_to_public(offering: OfferingRecord, view: CapacityView) -> dict:
    calendar = offering.calendar
    return {
        "id": offering.ref.id,
        "documentId": offering.ref.document_id,
        "isOpenForApply": offering.is_open_for_apply,
        "capacity": offering.capacity,
        "capacityUsed": view.used,
        "capacityRemaining": view.remaining,
        "capacityApproximate": view.approximate,
        "academic_calendar": {
            "id": calendar.ref.id,
            "documentId": calendar.ref.document_id,
            "name": calendar.name,
            "academicYearRange": calendar.academic_year_range,
            "isActive": calendar.is_active,
        }
        if calendar
        else None,
        "program": offering.program,
        "batch": offering.batch,
    }


# Public: the apply pages list offerings before login.
@router.get("")
def list_program_offerings(store: AdmissionStore = Depends(get_admission_store)):
    resolver = CapacityResolver(store, fail_open=CAPACITY_FAIL_OPEN)
    items: list[dict] = []
    for offering in store.list_open_offerings():
        view = resolver.resolve(offering)
        if ineligibility(offering, offering.calendar, view) is not None:
            continue
        items.append(_offering_to_public(offering, view))
    return {"data": items, "meta": {"pagination": {"total": len(items)}}}


@router.get("/{offering_ref}")
def get_program_offering(offering_ref: str, store: AdmissionStore = Depends(get_admission_store)):
    ref = parse_reference(offering_ref)
    offering = store.get_offering(ref)
    if offering is None:
        raise OfferingNotFoundError()
    view = CapacityResolver(store, fail_open=CAPACITY_FAIL_OPEN).resolve(offering)
    reason = ineligibility(offering, offering.calendar, view)
    return {
        "data": {
            **_offering_to_public(offering, view),
            "eligible": reason is None,
            "ineligibleReason": reason,
        }
    }
