"""
Record listing and patient uploads.

Cross-party listing is privileged: the gate is consulted immediately before
every such read, with no reuse of an earlier answer.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from ..core.errors import InvalidTransition, PermissionDenied
from ..core.permissions import (
    CAP_UPLOAD_RECORD,
    CAP_VIEW_OWN_RECORDS,
    CAP_VIEW_PATIENT_LIST,
    CAP_VIEW_PATIENT_RECORDS,
)
from ..models.ledger import DiagnosticReport, Identity, MedicalRecord, Role
from .access_control import AccessControlGate
from .content_storage import ContentStorageService
from .ledger import LedgerRevert

logger = logging.getLogger(__name__)


@dataclass
class PatientFile:
    """A record or diagnostic report as shown to a reader, with its gateway URL."""
    kind: str  # "record" or "diagnostic"
    index: int
    content_hash: str
    url: str
    title: str
    uploaded_at: datetime
    is_approved: bool = True


@dataclass
class PatientRecords:
    patient: Identity
    files: List[PatientFile] = field(default_factory=list)


class RecordAccess:
    def __init__(self, session, gate: AccessControlGate, storage: ContentStorageService):
        self.session = session
        self.ledger = session.ledger
        self.gate = gate
        self.storage = storage

    def record_file(self, record: MedicalRecord) -> PatientFile:
        return PatientFile(
            kind="record",
            index=record.record_index,
            content_hash=record.content_hash,
            url=self.storage.gateway_url(record.content_hash),
            title=record.file_name or "Medical record",
            uploaded_at=record.uploaded_at,
        )

    def report_file(self, report: DiagnosticReport) -> PatientFile:
        return PatientFile(
            kind="diagnostic",
            index=report.report_index,
            content_hash=report.content_hash,
            url=self.storage.gateway_url(report.content_hash),
            title=f"{report.test_type} ({report.diagnostic_center_name or report.diagnostic_center_id})",
            uploaded_at=report.uploaded_at,
            is_approved=report.is_approved,
        )

    async def upload_record(self, data: bytes, filename: str, content_type: str) -> MedicalRecord:
        patient = self.session.require(CAP_UPLOAD_RECORD)
        content_hash = await self.storage.upload(data, filename, content_type)
        try:
            index = await self.ledger.upload_record(
                patient.short_id, content_hash, filename, sender=self.session.wallet_address
            )
        except LedgerRevert as exc:
            raise InvalidTransition(f"Failed to record hash on blockchain: {exc.reason}") from exc
        logger.info("Record %s uploaded by %s", index, patient.short_id)
        for record in await self.ledger.get_my_records(sender=self.session.wallet_address):
            if record.record_index == index:
                return record
        return MedicalRecord(index, patient.short_id, content_hash, filename)

    async def my_records(self) -> List[PatientFile]:
        patient = self.session.require(CAP_VIEW_OWN_RECORDS)
        records = await self.ledger.get_my_records(sender=self.session.wallet_address)
        reports = await self.ledger.get_diagnostic_reports(patient.short_id)
        return [self.record_file(r) for r in records] + [self.report_file(r) for r in reports]

    async def diagnostic_history(self) -> List[DiagnosticReport]:
        """The patient's diagnostic reports, newest first."""
        patient = self.session.require(CAP_VIEW_OWN_RECORDS)
        reports = await self.ledger.get_diagnostic_reports(patient.short_id)
        return sorted(reports, key=lambda r: (r.uploaded_at, r.report_index), reverse=True)

    async def patient_records(self, patient_id: str) -> PatientRecords:
        clinician = self.session.require(CAP_VIEW_PATIENT_RECORDS)
        patient = await self.session.resolver.resolve(patient_id, Role.PATIENT)

        await self.gate.require_access(clinician.short_id, patient.short_id)
        try:
            records = await self.ledger.get_patient_records(
                patient.short_id, sender=self.session.wallet_address
            )
        except LedgerRevert as exc:
            # View grant present but storage access missing or revoked mid-flight
            raise PermissionDenied(f"Access to records denied by the ledger: {exc.reason}") from exc
        reports = await self.ledger.get_diagnostic_reports(patient.short_id)

        logger.info("%s listed records of %s", clinician.short_id, patient.short_id)
        files = [self.record_file(r) for r in records] + [self.report_file(r) for r in reports]
        return PatientRecords(patient=patient, files=files)

    async def patient_list(self) -> List[Identity]:
        clinician = self.session.require(CAP_VIEW_PATIENT_LIST)
        patients = await self.ledger.get_patient_list(clinician.short_id)
        self.session.resolver.remember(patients)
        return patients
