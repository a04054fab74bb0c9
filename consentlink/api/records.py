from fastapi import APIRouter, Depends, File, UploadFile, status
from pydantic import BaseModel
from typing import List
from datetime import datetime

from ..core.session import ClientSession
from ..models.ledger import DiagnosticReport
from ..services.access_control import AccessControlGate
from ..services.content_storage import ContentStorageService
from ..services.record_access import PatientFile, RecordAccess
from ..services.record_linkage import RecordLinkage, report_state
from ..services.request_lifecycle import RequestLifecycle
from .deps import get_gate, get_session, get_storage
from .identities import IdentityResponse

router = APIRouter(prefix="/patients", tags=["records"])


class PatientFileResponse(BaseModel):
    kind: str
    index: int
    content_hash: str
    url: str
    title: str
    uploaded_at: datetime
    is_approved: bool

    @classmethod
    def from_file(cls, item: PatientFile) -> "PatientFileResponse":
        return cls(**item.__dict__)


class PatientRecordsResponse(BaseModel):
    patient: IdentityResponse
    files: List[PatientFileResponse]


class DiagnosticReportResponse(BaseModel):
    report_index: int
    patient_id: str
    diagnostic_center_id: str
    diagnostic_center_name: str
    content_hash: str
    test_type: str
    description: str
    state: str
    uploaded_at: datetime

    @classmethod
    def from_report(cls, report: DiagnosticReport) -> "DiagnosticReportResponse":
        return cls(
            report_index=report.report_index,
            patient_id=report.patient_id,
            diagnostic_center_id=report.diagnostic_center_id,
            diagnostic_center_name=report.diagnostic_center_name,
            content_hash=report.content_hash,
            test_type=report.test_type,
            description=report.description,
            state=report_state(report).value,
            uploaded_at=report.uploaded_at,
        )


def _record_access(
    session: ClientSession = Depends(get_session),
    gate: AccessControlGate = Depends(get_gate),
    storage: ContentStorageService = Depends(get_storage),
) -> RecordAccess:
    return RecordAccess(session, gate, storage)


# Own-record routes come before /{patient_id} so "me" is not taken as an id


@router.get("/me/records", response_model=List[PatientFileResponse])
async def my_records(access: RecordAccess = Depends(_record_access)):
    return [PatientFileResponse.from_file(f) for f in await access.my_records()]


@router.post("/me/records", response_model=PatientFileResponse, status_code=status.HTTP_201_CREATED)
async def upload_record(
    record: UploadFile = File(...),
    access: RecordAccess = Depends(_record_access),
):
    data = await record.read()
    saved = await access.upload_record(data, record.filename or "record", record.content_type or "")
    return PatientFileResponse.from_file(access.record_file(saved))


@router.get("/me/reports", response_model=List[DiagnosticReportResponse])
async def diagnostic_history(access: RecordAccess = Depends(_record_access)):
    """Diagnostic reports for the calling patient, newest first."""
    return [DiagnosticReportResponse.from_report(r) for r in await access.diagnostic_history()]


@router.get("/", response_model=List[IdentityResponse])
async def patient_list(access: RecordAccess = Depends(_record_access)):
    """Patients who have granted the calling clinician access."""
    return [IdentityResponse.from_identity(p) for p in await access.patient_list()]


@router.get("/{patient_id}/records", response_model=PatientRecordsResponse)
async def patient_records(patient_id: str, access: RecordAccess = Depends(_record_access)):
    result = await access.patient_records(patient_id)
    return PatientRecordsResponse(
        patient=IdentityResponse.from_identity(result.patient),
        files=[PatientFileResponse.from_file(f) for f in result.files],
    )


@router.get("/{patient_id}/reports/unfinished", response_model=List[DiagnosticReportResponse])
async def unfinished_reports(
    patient_id: str,
    session: ClientSession = Depends(get_session),
    storage: ContentStorageService = Depends(get_storage),
):
    """Reports the calling center uploaded for ``patient_id`` that still need linking or approval."""
    linkage = RecordLinkage(session, RequestLifecycle(session), storage)
    return [DiagnosticReportResponse.from_report(r) for r in await linkage.unfinished_reports(patient_id)]
