"""
In-memory ledger for development and tests.

Enforces the same rules as the deployed registries: the sender must be the
wallet registered for the acting id, request status only moves forward,
a report is linked at most once and approval flips once. Every call yields
to the event loop so concurrent callers interleave the way remote calls do,
and writes are serialized on one lock, which makes this the single
serialization point for conflicting writes.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Set, Tuple

from ..core.errors import LedgerUnavailable
from ..models.ledger import (
    DiagnosticReport,
    Identity,
    MedicalRecord,
    PermissionGrant,
    RequestStatus,
    Role,
    TestRequest,
    same_address,
)
from .ledger import LedgerRevert

logger = logging.getLogger(__name__)


class InMemoryLedger:
    def __init__(self, network_id: int = 1337):
        self.network_id = network_id
        self._identities: Dict[str, Dict[str, Identity]] = {
            Role.PATIENT: {},
            Role.CLINICIAN: {},
            Role.DIAGNOSTIC_CENTER: {},
        }
        self._passwords: Dict[Tuple[str, str], str] = {}
        self._grants: Dict[Tuple[str, str], PermissionGrant] = {}
        self._storage_access: Dict[str, Set[str]] = {}
        self._requests: Dict[int, TestRequest] = {}
        self._next_request_id = 1
        self._reports: Dict[str, List[DiagnosticReport]] = {}
        self._records: Dict[str, List[MedicalRecord]] = {}
        self._failures: Dict[str, int] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop = None

    # ------------------------------------------------------------------
    # Test and seeding helpers
    # ------------------------------------------------------------------

    def register(
        self,
        role: str,
        short_id: str,
        wallet_address: str,
        display_name: str,
        password: str = "",
    ) -> Identity:
        """Registration happens outside this layer; this stands in for it."""
        registry = self._identities[role]
        if short_id in registry:
            raise LedgerRevert(f"{role} {short_id} already registered")
        if any(same_address(i.wallet_address, wallet_address) for i in registry.values()):
            raise LedgerRevert("Wallet already registered")
        identity = Identity(short_id, role, wallet_address, display_name)
        registry[short_id] = identity
        self._passwords[(role, short_id)] = password
        return replace(identity)

    def has_identity(self, role: str, short_id: str) -> bool:
        return short_id in self._identities[role]

    def fail_next(self, method: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` fail as unreachable."""
        self._failures[method] = self._failures.get(method, 0) + times

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def _enter(self, method: str) -> None:
        await asyncio.sleep(0)
        remaining = self._failures.get(method, 0)
        if remaining:
            self._failures[method] = remaining - 1
            raise LedgerUnavailable(f"Ledger call '{method}' failed: connection lost")

    def _identity(self, role: str, short_id: str) -> Optional[Identity]:
        return self._identities[role].get(short_id)

    def _require_sender(self, role: str, short_id: str, sender: str) -> Identity:
        identity = self._identity(role, short_id)
        if identity is None:
            raise LedgerRevert(f"{role} {short_id} not registered")
        if not same_address(identity.wallet_address, sender):
            raise LedgerRevert(f"Caller is not the registered wallet for {short_id}")
        return identity

    def _identity_by_wallet(self, role: str, wallet: str) -> Optional[Identity]:
        for identity in self._identities[role].values():
            if same_address(identity.wallet_address, wallet):
                return identity
        return None

    def _report(self, patient_id: str, report_index: int) -> DiagnosticReport:
        reports = self._reports.get(patient_id, [])
        if report_index < 0 or report_index >= len(reports):
            raise LedgerRevert("Report not found")
        return reports[report_index]

    # ------------------------------------------------------------------
    # Identity registries
    # ------------------------------------------------------------------

    async def get_network_id(self) -> int:
        await self._enter("get_network_id")
        return self.network_id

    async def _details(self, method: str, role: str, short_id: str) -> Optional[Identity]:
        await self._enter(method)
        identity = self._identity(role, short_id)
        return replace(identity) if identity else None

    async def get_patient_details(self, short_id: str) -> Optional[Identity]:
        return await self._details("get_patient_details", Role.PATIENT, short_id)

    async def get_doctor_details(self, short_id: str) -> Optional[Identity]:
        return await self._details("get_doctor_details", Role.CLINICIAN, short_id)

    async def get_diagnostic_details(self, short_id: str) -> Optional[Identity]:
        return await self._details("get_diagnostic_details", Role.DIAGNOSTIC_CENTER, short_id)

    async def is_registered(self, role: str, short_id: str) -> bool:
        await self._enter("is_registered")
        return short_id in self._identities.get(role, {})

    async def validate_password(self, role: str, short_id: str, password: str) -> bool:
        await self._enter("validate_password")
        return self._passwords.get((role, short_id)) == password

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def is_permission_granted(self, patient_id: str, clinician_id: str) -> bool:
        await self._enter("is_permission_granted")
        return (patient_id, clinician_id) in self._grants

    async def grant_permission(
        self, patient_id: str, clinician_id: str, patient_name: str, *, sender: str
    ) -> None:
        async with self._write_lock():
            await self._enter("grant_permission")
            self._require_sender(Role.PATIENT, patient_id, sender)
            if self._identity(Role.CLINICIAN, clinician_id) is None:
                raise LedgerRevert("Doctor not found")
            if (patient_id, clinician_id) in self._grants:
                raise LedgerRevert("View Access already given to this Doctor")
            self._grants[(patient_id, clinician_id)] = PermissionGrant(patient_id, clinician_id)
            logger.info("Ledger: %s granted %s", patient_id, clinician_id)

    async def revoke_permission(self, patient_id: str, clinician_id: str, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("revoke_permission")
            self._require_sender(Role.PATIENT, patient_id, sender)
            if self._grants.pop((patient_id, clinician_id), None) is None:
                raise LedgerRevert("Permission not granted")
            logger.info("Ledger: %s revoked %s", patient_id, clinician_id)

    async def grant_access_to_doctor(self, doctor_address: str, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("grant_access_to_doctor")
            if self._identity_by_wallet(Role.PATIENT, sender) is None:
                raise LedgerRevert("Only patients can grant access")
            self._storage_access.setdefault(sender.lower(), set()).add(doctor_address.lower())

    async def revoke_access_from_doctor(self, doctor_address: str, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("revoke_access_from_doctor")
            self._storage_access.setdefault(sender.lower(), set()).discard(doctor_address.lower())

    # ------------------------------------------------------------------
    # Test requests
    # ------------------------------------------------------------------

    async def request_test(
        self, patient_id: str, clinician_id: str, test_type: str, description: str, *, sender: str
    ) -> int:
        async with self._write_lock():
            await self._enter("request_test")
            self._require_sender(Role.CLINICIAN, clinician_id, sender)
            if self._identity(Role.PATIENT, patient_id) is None:
                raise LedgerRevert("Patient not found")
            request_id = self._next_request_id
            self._next_request_id += 1
            self._requests[request_id] = TestRequest(
                request_id=request_id,
                patient_id=patient_id,
                clinician_id=clinician_id,
                test_type=test_type,
                description=description,
            )
            return request_id

    async def assign_test(self, request_id: int, diagnostic_center_id: str, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("assign_test")
            self._require_sender(Role.DIAGNOSTIC_CENTER, diagnostic_center_id, sender)
            request = self._requests.get(request_id)
            if request is None:
                raise LedgerRevert("Request does not exist")
            if request.status != RequestStatus.REQUESTED:
                raise LedgerRevert("Request already assigned")
            request.diagnostic_center_id = diagnostic_center_id
            request.status = RequestStatus.ASSIGNED

    async def get_pending_requests(self) -> List[int]:
        await self._enter("get_pending_requests")
        return [
            rid for rid, r in sorted(self._requests.items())
            if r.status == RequestStatus.REQUESTED
        ]

    async def get_diagnostic_requests(self, diagnostic_center_id: str) -> List[int]:
        await self._enter("get_diagnostic_requests")
        return [
            rid for rid, r in sorted(self._requests.items())
            if r.diagnostic_center_id == diagnostic_center_id
        ]

    async def get_test_request(self, request_id: int) -> Optional[TestRequest]:
        await self._enter("get_test_request")
        request = self._requests.get(request_id)
        return replace(request) if request else None

    # ------------------------------------------------------------------
    # Records and reports
    # ------------------------------------------------------------------

    async def upload_record(
        self, patient_id: str, content_hash: str, file_name: str, *, sender: str
    ) -> int:
        async with self._write_lock():
            await self._enter("upload_record")
            self._require_sender(Role.PATIENT, patient_id, sender)
            records = self._records.setdefault(patient_id, [])
            records.append(MedicalRecord(len(records), patient_id, content_hash, file_name))
            return len(records) - 1

    async def get_my_records(self, *, sender: str) -> List[MedicalRecord]:
        await self._enter("get_my_records")
        patient = self._identity_by_wallet(Role.PATIENT, sender)
        if patient is None:
            raise LedgerRevert("Only patients have records")
        return [replace(r) for r in self._records.get(patient.short_id, [])]

    async def get_patient_records(self, patient_id: str, *, sender: str) -> List[MedicalRecord]:
        await self._enter("get_patient_records")
        patient = self._identity(Role.PATIENT, patient_id)
        if patient is None:
            raise LedgerRevert("Patient not found")
        allowed = self._storage_access.get(patient.wallet_address.lower(), set())
        if sender.lower() not in allowed:
            raise LedgerRevert("Access denied")
        return [replace(r) for r in self._records.get(patient_id, [])]

    async def upload_diagnostic_report(
        self,
        patient_id: str,
        diagnostic_center_id: str,
        test_type: str,
        content_hash: str,
        center_name: str,
        description: str,
        *,
        sender: str,
    ) -> int:
        async with self._write_lock():
            await self._enter("upload_diagnostic_report")
            self._require_sender(Role.DIAGNOSTIC_CENTER, diagnostic_center_id, sender)
            if self._identity(Role.PATIENT, patient_id) is None:
                raise LedgerRevert("Patient not found")
            reports = self._reports.setdefault(patient_id, [])
            reports.append(
                DiagnosticReport(
                    report_index=len(reports),
                    patient_id=patient_id,
                    diagnostic_center_id=diagnostic_center_id,
                    content_hash=content_hash,
                    test_type=test_type,
                    description=description,
                    diagnostic_center_name=center_name,
                )
            )
            return len(reports) - 1

    async def link_report_to_request(self, request_id: int, report_index: int, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("link_report_to_request")
            request = self._requests.get(request_id)
            if request is None:
                raise LedgerRevert("Request does not exist")
            if request.status != RequestStatus.ASSIGNED:
                raise LedgerRevert("Request is not in ASSIGNED state")
            self._require_sender(Role.DIAGNOSTIC_CENTER, request.diagnostic_center_id, sender)
            report = self._report(request.patient_id, report_index)
            if report.linked_request_id is not None:
                raise LedgerRevert("Report already linked")
            report.linked_request_id = request_id
            request.report_index = report_index
            request.status = RequestStatus.COMPLETED

    async def approve_diagnostic_report(self, patient_id: str, report_index: int, *, sender: str) -> None:
        async with self._write_lock():
            await self._enter("approve_diagnostic_report")
            report = self._report(patient_id, report_index)
            self._require_sender(Role.DIAGNOSTIC_CENTER, report.diagnostic_center_id, sender)
            if report.is_approved:
                raise LedgerRevert("Report already approved")
            if report.linked_request_id is not None:
                request = self._requests[report.linked_request_id]
                if request.status != RequestStatus.COMPLETED:
                    raise LedgerRevert("Request is not in COMPLETED state")
                request.status = RequestStatus.APPROVED
            report.is_approved = True

    async def get_diagnostic_reports(self, patient_id: str) -> List[DiagnosticReport]:
        await self._enter("get_diagnostic_reports")
        return [replace(r) for r in self._reports.get(patient_id, [])]

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def get_patient_list(self, clinician_id: str) -> List[Identity]:
        await self._enter("get_patient_list")
        return [
            replace(self._identities[Role.PATIENT][patient_id])
            for (patient_id, granted_to) in self._grants
            if granted_to == clinician_id
        ]
