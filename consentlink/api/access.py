from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Optional

from ..core.permissions import CAP_VIEW_PATIENT_RECORDS
from ..core.session import ClientSession
from ..models.ledger import Role
from ..services.access_control import (
    AccessControlGate,
    AdvisoryPermissionCache,
    ConsentService,
)
from .deps import get_cache, get_gate, get_session

router = APIRouter(prefix="/access", tags=["access"])


class GrantRequest(BaseModel):
    clinician_id: str


class ConsentResponse(BaseModel):
    patient_id: str
    clinician_id: str
    granted: bool
    changed: bool


class AccessCheckResponse(BaseModel):
    patient_id: str
    clinician_id: str
    decision: str
    # Last outcome seen before this check; display only
    previous_hint: Optional[bool] = None


@router.post("/grants", response_model=ConsentResponse)
async def grant_access(
    body: GrantRequest,
    session: ClientSession = Depends(get_session),
    cache: AdvisoryPermissionCache = Depends(get_cache),
):
    change = await ConsentService(session, cache=cache).grant_access(body.clinician_id)
    return ConsentResponse(**change.__dict__)


@router.delete("/grants/{clinician_id}", response_model=ConsentResponse)
async def revoke_access(
    clinician_id: str,
    session: ClientSession = Depends(get_session),
    cache: AdvisoryPermissionCache = Depends(get_cache),
):
    change = await ConsentService(session, cache=cache).revoke_access(clinician_id)
    return ConsentResponse(**change.__dict__)


@router.get("/check/{patient_id}", response_model=AccessCheckResponse)
async def check_access(
    patient_id: str,
    session: ClientSession = Depends(get_session),
    gate: AccessControlGate = Depends(get_gate),
    cache: AdvisoryPermissionCache = Depends(get_cache),
):
    """Ask the ledger whether the calling clinician may read ``patient_id``."""
    clinician = session.require(CAP_VIEW_PATIENT_RECORDS)
    patient = await session.resolver.resolve(patient_id, Role.PATIENT)
    previous = cache.hint(patient.short_id, clinician.short_id)
    decision = await gate.verify(clinician.short_id, patient.short_id)
    return AccessCheckResponse(
        patient_id=patient.short_id,
        clinician_id=clinician.short_id,
        decision=decision.value,
        previous_hint=previous,
    )
