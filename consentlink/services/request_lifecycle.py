"""
Diagnostic test request lifecycle.

    REQUESTED -> ASSIGNED -> COMPLETED -> APPROVED

Linear, forward only, terminal at APPROVED. Each transition is one ledger
write. Before writing, the current status is re-read; after a rejected
write it is re-read again and the rejection is reported against what the
ledger actually holds. Nothing here retries: a losing or stale attempt is
surfaced and the user re-syncs.
"""
import logging
from typing import Dict, List, Optional

from ..core.errors import AlreadyAssigned, InvalidTransition, NotRegistered
from ..core.permissions import (
    CAP_APPROVE_REPORT,
    CAP_ASSIGN_TEST,
    CAP_REQUEST_TEST,
    CAP_UPLOAD_REPORT,
)
from ..models.ledger import STATUS_ORDER, TEST_TYPES, RequestStatus, Role, TestRequest
from .ledger import LedgerRevert

logger = logging.getLogger(__name__)

# The only legal predecessor of each status
PREDECESSOR: Dict[RequestStatus, RequestStatus] = {
    STATUS_ORDER[i + 1]: STATUS_ORDER[i] for i in range(len(STATUS_ORDER) - 1)
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return PREDECESSOR.get(target) == current


class RequestLifecycle:
    def __init__(self, session):
        self.session = session
        self.ledger = session.ledger
        # Highest status observed per request, to catch a ledger answer going backwards
        self._observed: Dict[int, RequestStatus] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _observe(self, request: TestRequest) -> TestRequest:
        seen = self._observed.get(request.request_id)
        if seen is not None and request.status.rank < seen.rank:
            raise InvalidTransition(
                f"Request {request.request_id} reads as {request.status.value} after "
                f"{seen.value} was observed. Refresh before acting on it."
            )
        self._observed[request.request_id] = request.status
        return request

    async def get_request(self, request_id: int) -> TestRequest:
        request = await self.ledger.get_test_request(request_id)
        if request is None:
            raise InvalidTransition(f"Test request {request_id} does not exist.")
        return self._observe(request)

    async def _load(self, ids: List[int]) -> List[TestRequest]:
        requests = []
        for request_id in ids:
            request = await self.ledger.get_test_request(request_id)
            if request is not None:
                requests.append(self._observe(request))
        return requests

    async def pending_requests(self) -> List[TestRequest]:
        """Requests no diagnostic center has taken yet."""
        return await self._load(await self.ledger.get_pending_requests())

    async def my_requests(self) -> List[TestRequest]:
        """Requests assigned to the session's diagnostic center."""
        identity = self.session.require(CAP_ASSIGN_TEST)
        return await self._load(await self.ledger.get_diagnostic_requests(identity.short_id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create_request(self, patient_id: str, test_type: str, description: str) -> TestRequest:
        clinician = self.session.require(CAP_REQUEST_TEST)
        if test_type not in TEST_TYPES:
            raise ValueError(f"Unknown test type '{test_type}'")
        if not description or not description.strip():
            raise ValueError("Please enter a description")

        # Read context on the patient: the patient must resolve in its registry
        patient = await self.session.resolver.find(patient_id, Role.PATIENT)
        if patient is None:
            raise NotRegistered(f"Patient {patient_id} is not registered.")

        try:
            request_id = await self.ledger.request_test(
                patient.short_id,
                clinician.short_id,
                test_type,
                description.strip(),
                sender=self.session.wallet_address,
            )
        except LedgerRevert as exc:
            raise InvalidTransition(f"Test request was rejected: {exc.reason}") from exc

        logger.info("Test request %s created by %s for %s", request_id, clinician.short_id, patient.short_id)
        return await self.get_request(request_id)

    async def assign_test(self, request_id: int) -> TestRequest:
        """
        Take a pending request for the session's diagnostic center. The ledger
        serializes racing centers; the loser gets AlreadyAssigned and must
        refresh its pending list rather than resubmit.
        """
        center = self.session.require(CAP_ASSIGN_TEST)
        current = await self.get_request(request_id)
        if current.status != RequestStatus.REQUESTED:
            raise self._assign_conflict(current, center.short_id)

        try:
            await self.ledger.assign_test(request_id, center.short_id, sender=self.session.wallet_address)
        except LedgerRevert as exc:
            after = await self.get_request(request_id)
            if after.status != RequestStatus.REQUESTED:
                logger.info("Assign of %s by %s lost to %s", request_id, center.short_id, after.diagnostic_center_id)
                raise self._assign_conflict(after, center.short_id) from exc
            raise InvalidTransition(f"Assignment was rejected: {exc.reason}") from exc

        updated = await self.get_request(request_id)
        if updated.diagnostic_center_id != center.short_id:
            raise self._assign_conflict(updated, center.short_id)
        logger.info("Test request %s assigned to %s", request_id, center.short_id)
        return updated

    @staticmethod
    def _assign_conflict(request: TestRequest, center_id: str):
        if request.diagnostic_center_id == center_id:
            return InvalidTransition(
                f"Request {request.request_id} is already assigned to you ({request.status.value})."
            )
        return AlreadyAssigned()

    async def _advance(
        self,
        request_id: int,
        target: RequestStatus,
        capability: str,
        write,
    ) -> TestRequest:
        identity = self.session.require(capability)
        current = await self.get_request(request_id)
        if not can_transition(current.status, target):
            raise InvalidTransition(
                f"Request {request_id} is {current.status.value}; it must be "
                f"{PREDECESSOR[target].value} to become {target.value}."
            )
        if current.diagnostic_center_id != identity.short_id:
            raise InvalidTransition(f"Request {request_id} is assigned to another diagnostic center.")

        try:
            await write(current)
        except LedgerRevert as exc:
            after = await self.get_request(request_id)
            raise InvalidTransition(
                f"Request {request_id} could not move to {target.value} "
                f"(now {after.status.value}): {exc.reason}"
            ) from exc

        updated = await self.get_request(request_id)
        logger.info("Test request %s moved %s -> %s", request_id, current.status.value, updated.status.value)
        return updated

    async def upload_report(self, request_id: int, report_index: int) -> TestRequest:
        """ASSIGNED -> COMPLETED by attaching an uploaded report. Does not approve it."""

        async def write(request: TestRequest) -> None:
            await self.ledger.link_report_to_request(
                request.request_id, report_index, sender=self.session.wallet_address
            )

        return await self._advance(request_id, RequestStatus.COMPLETED, CAP_UPLOAD_REPORT, write)

    async def approve_report(self, request_id: int) -> TestRequest:
        """COMPLETED -> APPROVED; the linked report's approval flips in the same write."""

        async def write(request: TestRequest) -> None:
            if request.report_index is None:
                raise LedgerRevert("No report linked to this request")
            await self.ledger.approve_diagnostic_report(
                request.patient_id, request.report_index, sender=self.session.wallet_address
            )

        return await self._advance(request_id, RequestStatus.APPROVED, CAP_APPROVE_REPORT, write)

    def last_observed(self, request_id: int) -> Optional[RequestStatus]:
        return self._observed.get(request_id)
