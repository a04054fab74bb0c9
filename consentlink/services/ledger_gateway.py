"""
HTTP client for the ledger gateway.

Reads go to ``POST {base}/call`` and writes to ``POST {base}/send``, both with
``{"method", "params", "from"}``. The gateway answers ``{"result": ...}`` or,
when the registry reverts, a 4xx with ``{"error": reason}``. Anything else
(transport failure, 5xx, unparsable body) means the ledger is unavailable.
"""
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx

from ..core.errors import LedgerUnavailable
from ..models.ledger import (
    ZERO_ADDRESS,
    DiagnosticReport,
    Identity,
    MedicalRecord,
    RequestStatus,
    Role,
    TestRequest,
)
from .ledger import LedgerRevert

logger = logging.getLogger(__name__)

# Older registry builds report an assigned request as IN_PROGRESS
_STATUS_ALIASES = {"IN_PROGRESS": RequestStatus.ASSIGNED}


def _timestamp(value: Any) -> datetime:
    if value in (None, ""):
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _status(value: str) -> RequestStatus:
    return _STATUS_ALIASES.get(value) or RequestStatus(value)


def _optional_id(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "", ZERO_ADDRESS) else None


class LedgerGatewayClient:
    """Ledger adapter over the HTTP gateway."""

    def __init__(self, base_url: str, timeout: int = 15, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, path: str, method: str, params: list, sender: Optional[str]) -> Any:
        payload = {"method": method, "params": params, "from": sender}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Ledger %s timed out: %s", method, exc)
            raise LedgerUnavailable("The blockchain did not respond in time. Please try again.") from exc
        except httpx.HTTPError as exc:
            logger.warning("Ledger %s unreachable: %s", method, exc)
            raise LedgerUnavailable() from exc

        if resp.status_code >= 500:
            logger.warning("Ledger %s failed with HTTP %s", method, resp.status_code)
            raise LedgerUnavailable()
        try:
            body = resp.json()
        except ValueError as exc:
            raise LedgerUnavailable("Malformed response from the blockchain gateway.") from exc
        if resp.status_code >= 400:
            reason = body.get("error") if isinstance(body, dict) else None
            raise LedgerRevert(str(reason or "Transaction reverted"))
        if not isinstance(body, dict) or "result" not in body:
            raise LedgerUnavailable("Malformed response from the blockchain gateway.")
        return body["result"]

    async def _call(self, method: str, *params: Any, sender: Optional[str] = None) -> Any:
        return await self._post("/call", method, list(params), sender)

    async def _send(self, method: str, *params: Any, sender: str) -> Any:
        logger.info("Ledger write %s from %s", method, sender)
        return await self._post("/send", method, list(params), sender)

    def _parse(self, parser, raw: Any):
        try:
            return parser(raw)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise LedgerUnavailable("Malformed response from the blockchain gateway.") from exc

    # ------------------------------------------------------------------
    # Response parsers
    # ------------------------------------------------------------------

    @staticmethod
    def _identity(role: str, short_id: str, raw: Any) -> Optional[Identity]:
        if raw is None:
            return None
        if isinstance(raw, (list, tuple)):
            wallet, name = raw[0], raw[1]
        else:
            wallet, name = raw["walletAddress"], raw.get("name", "")
        if not wallet or wallet == ZERO_ADDRESS:
            return None
        return Identity(short_id=short_id, role=role, wallet_address=wallet, display_name=name or "")

    @staticmethod
    def _request(raw: dict) -> Optional[TestRequest]:
        if not raw or not raw.get("exists", True):
            return None
        report_index = raw.get("reportIndex")
        return TestRequest(
            request_id=int(raw["requestId"]),
            patient_id=str(raw["patientId"]),
            clinician_id=str(raw["clinicianId"]),
            test_type=raw["testType"],
            description=raw.get("description", ""),
            status=_status(raw["status"]),
            diagnostic_center_id=_optional_id(raw.get("diagnosticCenterId")),
            report_index=int(report_index) if report_index not in (None, "") else None,
            created_at=_timestamp(raw.get("timestamp")),
        )

    @staticmethod
    def _report(index: int, patient_id: str, raw: dict) -> DiagnosticReport:
        linked = raw.get("linkedRequestId")
        return DiagnosticReport(
            report_index=int(raw.get("reportIndex", index)),
            patient_id=patient_id,
            diagnostic_center_id=str(raw["diagnosticCenterId"]),
            content_hash=raw["medicalReportHash"],
            test_type=raw["testType"],
            description=raw.get("description", ""),
            diagnostic_center_name=raw.get("diagnosticCenter", ""),
            is_approved=bool(raw.get("isApproved", False)),
            linked_request_id=int(linked) if linked not in (None, "", 0, "0") else None,
            uploaded_at=_timestamp(raw.get("timestamp")),
        )

    @staticmethod
    def _record(index: int, patient_id: str, raw: dict) -> MedicalRecord:
        return MedicalRecord(
            record_index=index,
            patient_id=patient_id,
            content_hash=raw["ipfsHash"],
            file_name=raw.get("fileName", ""),
            uploaded_at=_timestamp(raw.get("timestamp")),
        )

    # ------------------------------------------------------------------
    # Identity registries
    # ------------------------------------------------------------------

    async def get_network_id(self) -> int:
        return self._parse(int, await self._call("getNetworkId"))

    async def get_patient_details(self, short_id: str) -> Optional[Identity]:
        raw = await self._call("getPatientDetails", short_id)
        return self._parse(lambda r: self._identity(Role.PATIENT, short_id, r), raw)

    async def get_doctor_details(self, short_id: str) -> Optional[Identity]:
        raw = await self._call("getDoctorDetails", short_id)
        return self._parse(lambda r: self._identity(Role.CLINICIAN, short_id, r), raw)

    async def get_diagnostic_details(self, short_id: str) -> Optional[Identity]:
        raw = await self._call("getDiagnosticDetails", short_id)
        return self._parse(lambda r: self._identity(Role.DIAGNOSTIC_CENTER, short_id, r), raw)

    async def is_registered(self, role: str, short_id: str) -> bool:
        return bool(await self._call("isRegistered", role, short_id))

    async def validate_password(self, role: str, short_id: str, password: str) -> bool:
        return bool(await self._call("validatePassword", role, short_id, password))

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def is_permission_granted(self, patient_id: str, clinician_id: str) -> bool:
        result = await self._call("isPermissionGranted", patient_id, clinician_id)
        if not isinstance(result, bool):
            raise LedgerUnavailable("Malformed response from the blockchain gateway.")
        return result

    async def grant_permission(
        self, patient_id: str, clinician_id: str, patient_name: str, *, sender: str
    ) -> None:
        await self._send("grantPermission", patient_id, clinician_id, patient_name, sender=sender)

    async def revoke_permission(self, patient_id: str, clinician_id: str, *, sender: str) -> None:
        await self._send("revokePermission", patient_id, clinician_id, sender=sender)

    async def grant_access_to_doctor(self, doctor_address: str, *, sender: str) -> None:
        await self._send("grantAccessToDoctor", doctor_address, sender=sender)

    async def revoke_access_from_doctor(self, doctor_address: str, *, sender: str) -> None:
        await self._send("revokeAccessFromDoctor", doctor_address, sender=sender)

    # ------------------------------------------------------------------
    # Test requests
    # ------------------------------------------------------------------

    async def request_test(
        self, patient_id: str, clinician_id: str, test_type: str, description: str, *, sender: str
    ) -> int:
        result = await self._send("requestTest", patient_id, clinician_id, test_type, description, sender=sender)
        return self._parse(int, result)

    async def assign_test(self, request_id: int, diagnostic_center_id: str, *, sender: str) -> None:
        await self._send("assignTest", request_id, diagnostic_center_id, sender=sender)

    async def get_pending_requests(self) -> List[int]:
        return self._parse(lambda r: [int(i) for i in r], await self._call("getPendingRequests"))

    async def get_diagnostic_requests(self, diagnostic_center_id: str) -> List[int]:
        raw = await self._call("getDiagnosticRequests", diagnostic_center_id)
        return self._parse(lambda r: [int(i) for i in r], raw)

    async def get_test_request(self, request_id: int) -> Optional[TestRequest]:
        return self._parse(self._request, await self._call("getTestRequest", request_id))

    # ------------------------------------------------------------------
    # Records and reports
    # ------------------------------------------------------------------

    async def upload_record(
        self, patient_id: str, content_hash: str, file_name: str, *, sender: str
    ) -> int:
        result = await self._send("uploadRecord", patient_id, content_hash, file_name, sender=sender)
        return self._parse(int, result)

    async def get_my_records(self, *, sender: str) -> List[MedicalRecord]:
        raw = await self._call("getMyRecords", sender=sender)
        return self._parse(
            lambda r: [self._record(i, str(item.get("patientId", "")), item) for i, item in enumerate(r)],
            raw,
        )

    async def get_patient_records(self, patient_id: str, *, sender: str) -> List[MedicalRecord]:
        raw = await self._call("getPatientRecords", patient_id, sender=sender)
        return self._parse(lambda r: [self._record(i, patient_id, item) for i, item in enumerate(r)], raw)

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
        result = await self._send(
            "uploadDiagnosticReport",
            patient_id,
            diagnostic_center_id,
            test_type,
            content_hash,
            center_name,
            description,
            sender=sender,
        )
        return self._parse(int, result)

    async def link_report_to_request(self, request_id: int, report_index: int, *, sender: str) -> None:
        await self._send("linkReportToRequest", request_id, report_index, sender=sender)

    async def approve_diagnostic_report(self, patient_id: str, report_index: int, *, sender: str) -> None:
        await self._send("approveDiagnosticReport", patient_id, report_index, sender=sender)

    async def get_diagnostic_reports(self, patient_id: str) -> List[DiagnosticReport]:
        raw = await self._call("getDiagnosticReports", patient_id)
        return self._parse(lambda r: [self._report(i, patient_id, item) for i, item in enumerate(r)], raw)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def get_patient_list(self, clinician_id: str) -> List[Identity]:
        raw = await self._call("getPatientList", clinician_id)
        return self._parse(
            lambda r: [
                Identity(
                    short_id=str(item["hhNumber"]),
                    role=Role.PATIENT,
                    wallet_address=item.get("walletAddress", ""),
                    display_name=item.get("name", ""),
                )
                for item in r
            ],
            raw,
        )
