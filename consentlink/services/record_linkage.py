"""
Links uploaded diagnostic reports to test requests.

Upload, link and approval are separate ledger writes. A report that was
uploaded but not linked or approved is a normal intermediate state: it is
reported as such and can be resumed, never treated as a failure of the
upload itself.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..core.errors import ConsentLinkError, InvalidTransition, NotRegistered
from ..core.permissions import CAP_LINK_REPORT, CAP_UPLOAD_REPORT
from ..models.ledger import TEST_TYPES, DiagnosticReport, RequestStatus, Role, TestRequest
from .content_storage import ContentStorageService
from .ledger import LedgerRevert
from .request_lifecycle import RequestLifecycle

logger = logging.getLogger(__name__)


class ReportState(str, Enum):
    UNLINKED = "unlinked"
    LINKED = "linked"
    APPROVED = "approved"


def report_state(report: DiagnosticReport) -> ReportState:
    if report.is_approved:
        return ReportState.APPROVED
    if report.linked_request_id is not None:
        return ReportState.LINKED
    return ReportState.UNLINKED


@dataclass
class ReportUploadOutcome:
    report_index: int
    content_hash: str
    stage: ReportState
    request_id: Optional[int] = None
    error: Optional[ConsentLinkError] = None

    @property
    def complete(self) -> bool:
        if self.request_id is None:
            return True
        return self.stage == ReportState.APPROVED


class RecordLinkage:
    def __init__(self, session, lifecycle: RequestLifecycle, storage: ContentStorageService):
        self.session = session
        self.ledger = session.ledger
        self.lifecycle = lifecycle
        self.storage = storage

    async def _find_report(self, patient_id: str, report_index: int) -> DiagnosticReport:
        for report in await self.ledger.get_diagnostic_reports(patient_id):
            if report.report_index == report_index:
                return report
        raise InvalidTransition(f"Report {report_index} does not exist for patient {patient_id}.")

    async def link(self, request_id: int, report_index: int) -> TestRequest:
        """
        Attach ``report_index`` to ``request_id``. Linking the same pair again
        is a no-op; a report already attached to another request is rejected.
        """
        self.session.require(CAP_LINK_REPORT)
        request = await self.lifecycle.get_request(request_id)
        report = await self._find_report(request.patient_id, report_index)

        if report.linked_request_id == request_id:
            logger.info("Report %s already linked to request %s", report_index, request_id)
            return request
        if report.linked_request_id is not None:
            raise InvalidTransition(
                f"Report {report_index} is already linked to request {report.linked_request_id}."
            )
        return await self.lifecycle.upload_report(request_id, report_index)

    async def approve(self, request_id: int) -> TestRequest:
        return await self.lifecycle.approve_report(request_id)

    async def upload_report(
        self,
        patient_id: str,
        data: bytes,
        filename: str,
        content_type: str,
        test_type: str,
        description: str = "",
        request_id: Optional[int] = None,
    ) -> ReportUploadOutcome:
        """
        Store the file, record the report on the ledger and, for a requested
        test, link and approve it. Stops at the first failing step after the
        report exists and returns the stage reached with the error.
        """
        center = self.session.require(CAP_UPLOAD_REPORT)
        if test_type not in TEST_TYPES:
            raise ValueError(f"Unknown test type '{test_type}'")
        patient = await self.session.resolver.find(patient_id, Role.PATIENT)
        if patient is None:
            raise NotRegistered(f"Patient {patient_id} is not registered.")

        if request_id is not None:
            request = await self.lifecycle.get_request(request_id)
            if request.status != RequestStatus.ASSIGNED or request.diagnostic_center_id != center.short_id:
                raise InvalidTransition(
                    f"Request {request_id} is {request.status.value} and not awaiting a report from you."
                )
            if request.patient_id != patient.short_id:
                raise InvalidTransition(f"Request {request_id} belongs to a different patient.")

        content_hash = await self.storage.upload(data, filename, content_type)
        try:
            report_index = await self.ledger.upload_diagnostic_report(
                patient.short_id,
                center.short_id,
                test_type,
                content_hash,
                center.display_name,
                description or "No description provided",
                sender=self.session.wallet_address,
            )
        except LedgerRevert as exc:
            raise InvalidTransition(f"Report upload was rejected: {exc.reason}") from exc

        logger.info("Report %s uploaded for %s (%s)", report_index, patient.short_id, content_hash)
        outcome = ReportUploadOutcome(
            report_index=report_index,
            content_hash=content_hash,
            stage=ReportState.UNLINKED,
            request_id=request_id,
        )
        if request_id is None:
            return outcome
        return await self._finish(outcome)

    async def _finish(self, outcome: ReportUploadOutcome) -> ReportUploadOutcome:
        try:
            request = await self.link(outcome.request_id, outcome.report_index)
            outcome.stage = ReportState.LINKED
            if request.status == RequestStatus.COMPLETED:
                request = await self.approve(outcome.request_id)
            if request.status == RequestStatus.APPROVED:
                outcome.stage = ReportState.APPROVED
        except ConsentLinkError as exc:
            logger.warning(
                "Report %s for request %s stopped at %s: %s",
                outcome.report_index,
                outcome.request_id,
                outcome.stage.value,
                exc.message,
            )
            outcome.error = exc
        return outcome

    async def resume(self, request_id: int, report_index: int) -> ReportUploadOutcome:
        """Finish linking and approval for a report left in an intermediate state."""
        self.session.require(CAP_LINK_REPORT)
        request = await self.lifecycle.get_request(request_id)
        report = await self._find_report(request.patient_id, report_index)
        outcome = ReportUploadOutcome(
            report_index=report_index,
            content_hash=report.content_hash,
            stage=report_state(report),
            request_id=request_id,
        )
        if outcome.stage == ReportState.APPROVED:
            return outcome
        return await self._finish(outcome)

    async def unfinished_reports(self, patient_id: str) -> List[DiagnosticReport]:
        """This center's reports for a patient that are not yet approved."""
        center = self.session.require(CAP_UPLOAD_REPORT)
        return [
            report
            for report in await self.ledger.get_diagnostic_reports(patient_id)
            if report.diagnostic_center_id == center.short_id and not report.is_approved
        ]
