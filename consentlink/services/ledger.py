"""
Typed ledger interface consumed by the orchestration layer.

Two implementations ship with the package: ``LedgerGatewayClient`` (HTTP
gateway in front of the deployed registries) and ``InMemoryLedger``
(development and tests). Both raise ``LedgerUnavailable`` when the ledger
cannot be reached and ``LedgerRevert`` when the registry logic rejects a call.
"""
from typing import List, Optional, Protocol

from ..core.config import settings
from ..models.ledger import (
    DiagnosticReport,
    Identity,
    MedicalRecord,
    Role,
    TestRequest,
)


class LedgerRevert(Exception):
    """The registry rejected the call. The reason is the registry's own text."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class LedgerAdapter(Protocol):
    # Identity registries
    async def get_network_id(self) -> int: ...
    async def get_patient_details(self, short_id: str) -> Optional[Identity]: ...
    async def get_doctor_details(self, short_id: str) -> Optional[Identity]: ...
    async def get_diagnostic_details(self, short_id: str) -> Optional[Identity]: ...
    async def is_registered(self, role: str, short_id: str) -> bool: ...
    async def validate_password(self, role: str, short_id: str, password: str) -> bool: ...

    # Permissions
    async def is_permission_granted(self, patient_id: str, clinician_id: str) -> bool: ...
    async def grant_permission(
        self, patient_id: str, clinician_id: str, patient_name: str, *, sender: str
    ) -> None: ...
    async def revoke_permission(self, patient_id: str, clinician_id: str, *, sender: str) -> None: ...
    async def grant_access_to_doctor(self, doctor_address: str, *, sender: str) -> None: ...
    async def revoke_access_from_doctor(self, doctor_address: str, *, sender: str) -> None: ...

    # Test requests
    async def request_test(
        self, patient_id: str, clinician_id: str, test_type: str, description: str, *, sender: str
    ) -> int: ...
    async def assign_test(self, request_id: int, diagnostic_center_id: str, *, sender: str) -> None: ...
    async def get_pending_requests(self) -> List[int]: ...
    async def get_diagnostic_requests(self, diagnostic_center_id: str) -> List[int]: ...
    async def get_test_request(self, request_id: int) -> Optional[TestRequest]: ...

    # Records and reports
    async def upload_record(
        self, patient_id: str, content_hash: str, file_name: str, *, sender: str
    ) -> int: ...
    async def get_my_records(self, *, sender: str) -> List[MedicalRecord]: ...
    async def get_patient_records(self, patient_id: str, *, sender: str) -> List[MedicalRecord]: ...
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
    ) -> int: ...
    async def link_report_to_request(self, request_id: int, report_index: int, *, sender: str) -> None: ...
    async def approve_diagnostic_report(self, patient_id: str, report_index: int, *, sender: str) -> None: ...
    async def get_diagnostic_reports(self, patient_id: str) -> List[DiagnosticReport]: ...

    # Roster
    async def get_patient_list(self, clinician_id: str) -> List[Identity]: ...


async def lookup_identity(ledger: LedgerAdapter, role: str, short_id: str) -> Optional[Identity]:
    """Dispatch to the per-role details call."""
    if role == Role.PATIENT:
        return await ledger.get_patient_details(short_id)
    if role == Role.CLINICIAN:
        return await ledger.get_doctor_details(short_id)
    if role == Role.DIAGNOSTIC_CENTER:
        return await ledger.get_diagnostic_details(short_id)
    return None


def build_ledger() -> LedgerAdapter:
    """Ledger for the running app: the gateway when configured, else in-memory."""
    if settings.LEDGER_MOCK_MODE or not settings.LEDGER_GATEWAY_URL:
        from .memory_ledger import InMemoryLedger
        from ..seed_demo import seed_demo_ledger

        ledger = InMemoryLedger(network_id=settings.REQUIRED_NETWORK_ID)
        seed_demo_ledger(ledger)
        return ledger

    from .ledger_gateway import LedgerGatewayClient

    return LedgerGatewayClient(settings.LEDGER_GATEWAY_URL, timeout=settings.LEDGER_TIMEOUT)
