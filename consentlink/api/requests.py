from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
import logging

from ..core.session import ClientSession
from ..models.ledger import TestRequest
from ..services.content_storage import ContentStorageService
from ..services.record_linkage import RecordLinkage, ReportUploadOutcome
from ..services.request_lifecycle import RequestLifecycle
from .deps import get_session, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["requests"])


class TestRequestCreate(BaseModel):
    patient_id: str
    test_type: str
    description: str


class TestRequestResponse(BaseModel):
    request_id: int
    patient_id: str
    clinician_id: str
    test_type: str
    description: str
    status: str
    diagnostic_center_id: Optional[str]
    report_index: Optional[int]
    created_at: datetime

    @classmethod
    def from_request(cls, request: TestRequest) -> "TestRequestResponse":
        return cls(
            request_id=request.request_id,
            patient_id=request.patient_id,
            clinician_id=request.clinician_id,
            test_type=request.test_type,
            description=request.description,
            status=request.status.value,
            diagnostic_center_id=request.diagnostic_center_id,
            report_index=request.report_index,
            created_at=request.created_at,
        )


class LinkRequest(BaseModel):
    report_index: int


class ReportOutcomeResponse(BaseModel):
    report_index: int
    content_hash: str
    stage: str
    request_id: Optional[int]
    complete: bool
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: ReportUploadOutcome) -> "ReportOutcomeResponse":
        return cls(
            report_index=outcome.report_index,
            content_hash=outcome.content_hash,
            stage=outcome.stage.value,
            request_id=outcome.request_id,
            complete=outcome.complete,
            error=outcome.error.message if outcome.error else None,
        )


@router.post("/", response_model=TestRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(body: TestRequestCreate, session: ClientSession = Depends(get_session)):
    request = await RequestLifecycle(session).create_request(
        body.patient_id, body.test_type, body.description
    )
    return TestRequestResponse.from_request(request)


@router.get("/pending", response_model=List[TestRequestResponse])
async def pending_requests(session: ClientSession = Depends(get_session)):
    requests = await RequestLifecycle(session).pending_requests()
    return [TestRequestResponse.from_request(r) for r in requests]


@router.get("/mine", response_model=List[TestRequestResponse])
async def my_requests(session: ClientSession = Depends(get_session)):
    """Requests assigned to the calling diagnostic center."""
    requests = await RequestLifecycle(session).my_requests()
    return [TestRequestResponse.from_request(r) for r in requests]


@router.get("/{request_id}", response_model=TestRequestResponse)
async def get_request(request_id: int, session: ClientSession = Depends(get_session)):
    request = await RequestLifecycle(session).get_request(request_id)
    return TestRequestResponse.from_request(request)


@router.post("/{request_id}/assign", response_model=TestRequestResponse)
async def assign_request(request_id: int, session: ClientSession = Depends(get_session)):
    request = await RequestLifecycle(session).assign_test(request_id)
    return TestRequestResponse.from_request(request)


@router.post("/{request_id}/link", response_model=TestRequestResponse)
async def link_report(
    request_id: int,
    body: LinkRequest,
    session: ClientSession = Depends(get_session),
    storage: ContentStorageService = Depends(get_storage),
):
    linkage = RecordLinkage(session, RequestLifecycle(session), storage)
    request = await linkage.link(request_id, body.report_index)
    return TestRequestResponse.from_request(request)


@router.post("/{request_id}/approve", response_model=TestRequestResponse)
async def approve_report(request_id: int, session: ClientSession = Depends(get_session)):
    request = await RequestLifecycle(session).approve_report(request_id)
    return TestRequestResponse.from_request(request)


@router.post("/{request_id}/report", response_model=ReportOutcomeResponse, status_code=status.HTTP_201_CREATED)
async def upload_report(
    request_id: int,
    test_type: str = Form(...),
    description: Optional[str] = Form(None),
    report: UploadFile = File(...),
    session: ClientSession = Depends(get_session),
    storage: ContentStorageService = Depends(get_storage),
):
    """
    Upload a diagnostic report for an assigned request, then link and approve it.
    A report that stops after upload is returned with its stage and error so
    it can be resumed.
    """
    lifecycle = RequestLifecycle(session)
    request = await lifecycle.get_request(request_id)
    data = await report.read()
    outcome = await RecordLinkage(session, lifecycle, storage).upload_report(
        request.patient_id,
        data,
        report.filename or "report",
        report.content_type or "",
        test_type,
        description or "",
        request_id=request_id,
    )
    if not outcome.complete:
        logger.warning("Report %s for request %s left at %s", outcome.report_index, request_id, outcome.stage.value)
    return ReportOutcomeResponse.from_outcome(outcome)


@router.post("/{request_id}/resume", response_model=ReportOutcomeResponse)
async def resume_report(
    request_id: int,
    body: LinkRequest,
    session: ClientSession = Depends(get_session),
    storage: ContentStorageService = Depends(get_storage),
):
    linkage = RecordLinkage(session, RequestLifecycle(session), storage)
    outcome = await linkage.resume(request_id, body.report_index)
    return ReportOutcomeResponse.from_outcome(outcome)
