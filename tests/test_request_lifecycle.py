"""Tests for the diagnostic test request lifecycle."""
import asyncio
from dataclasses import replace

import pytest

from consentlink.core.errors import (
    AlreadyAssigned,
    InvalidTransition,
    NotRegistered,
    PermissionDenied,
)
from consentlink.models.ledger import RequestStatus
from consentlink.seed_demo import DEMO_CENTER_IDS, DEMO_CLINICIAN_ID, DEMO_PATIENT_ID
from consentlink.services.request_lifecycle import RequestLifecycle, can_transition

D1, D2 = DEMO_CENTER_IDS


def test_transition_table_is_linear():
    assert can_transition(RequestStatus.REQUESTED, RequestStatus.ASSIGNED)
    assert can_transition(RequestStatus.ASSIGNED, RequestStatus.COMPLETED)
    assert can_transition(RequestStatus.COMPLETED, RequestStatus.APPROVED)
    assert not can_transition(RequestStatus.REQUESTED, RequestStatus.COMPLETED)
    assert not can_transition(RequestStatus.APPROVED, RequestStatus.REQUESTED)
    assert not can_transition(RequestStatus.ASSIGNED, RequestStatus.ASSIGNED)


def test_create_request(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        return await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "MRI", "Knee pain")

    request = asyncio.run(scenario())
    assert request.status == RequestStatus.REQUESTED
    assert request.patient_id == DEMO_PATIENT_ID
    assert request.clinician_id == DEMO_CLINICIAN_ID
    assert request.diagnostic_center_id is None


@pytest.mark.parametrize(
    "test_type,description",
    [("Astrology", "Knee pain"), ("MRI", "   ")],
)
def test_create_request_validates_input(open_session, test_type, description):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, test_type, description)

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_create_request_for_unknown_patient(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        await RequestLifecycle(clinician).create_request("P000000", "MRI", "Knee pain")

    with pytest.raises(NotRegistered):
        asyncio.run(scenario())


def test_patient_cannot_create_request(open_session):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await RequestLifecycle(patient).create_request(DEMO_PATIENT_ID, "MRI", "Knee pain")

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_full_lifecycle_through_approval(ledger, open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        center = await open_session(D1)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "MRI", "Knee pain")

        lifecycle = RequestLifecycle(center)
        pending = await lifecycle.pending_requests()
        assigned = await lifecycle.assign_test(request.request_id)
        index = await ledger.upload_diagnostic_report(
            DEMO_PATIENT_ID, D1, "MRI", "bafyreport", "Central Diagnostics", "",
            sender=center.wallet_address,
        )
        completed = await lifecycle.upload_report(request.request_id, index)
        approved = await lifecycle.approve_report(request.request_id)
        return pending, assigned, completed, approved, await lifecycle.my_requests()

    pending, assigned, completed, approved, mine = asyncio.run(scenario())
    assert [r.request_id for r in pending] == [assigned.request_id]
    assert assigned.status == RequestStatus.ASSIGNED
    assert assigned.diagnostic_center_id == D1
    assert completed.status == RequestStatus.COMPLETED
    assert completed.report_index == 0
    assert approved.status == RequestStatus.APPROVED
    assert [r.status for r in mine] == [RequestStatus.APPROVED]


def test_concurrent_assign_has_one_winner(open_session):
    """Two centers race for the same request: exactly one wins, the other sees AlreadyAssigned."""

    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "X-Ray", "Chest")
        first = RequestLifecycle(await open_session(D1))
        second = RequestLifecycle(await open_session(D2))
        results = await asyncio.gather(
            first.assign_test(request.request_id),
            second.assign_test(request.request_id),
            return_exceptions=True,
        )
        final = await first.get_request(request.request_id)
        return results, final

    results, final = asyncio.run(scenario())
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AlreadyAssigned)
    assert final.status == RequestStatus.ASSIGNED
    assert final.diagnostic_center_id == winners[0].diagnostic_center_id


def test_assign_after_assignment_is_already_assigned(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "ECG", "Palpitations")
        await RequestLifecycle(await open_session(D1)).assign_test(request.request_id)
        await RequestLifecycle(await open_session(D2)).assign_test(request.request_id)

    with pytest.raises(AlreadyAssigned):
        asyncio.run(scenario())


def test_reassigning_own_request_is_invalid_transition(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "ECG", "Palpitations")
        lifecycle = RequestLifecycle(await open_session(D1))
        await lifecycle.assign_test(request.request_id)
        await lifecycle.assign_test(request.request_id)

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_approve_before_completion_is_rejected(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "ECG", "Palpitations")
        lifecycle = RequestLifecycle(await open_session(D1))
        await lifecycle.assign_test(request.request_id)
        await lifecycle.approve_report(request.request_id)

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_other_center_cannot_complete(ledger, open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "ECG", "Palpitations")
        await RequestLifecycle(await open_session(D1)).assign_test(request.request_id)
        intruder = await open_session(D2)
        index = await ledger.upload_diagnostic_report(
            DEMO_PATIENT_ID, D2, "ECG", "bafyother", "Northside Imaging", "", sender=intruder.wallet_address
        )
        await RequestLifecycle(intruder).upload_report(request.request_id, index)

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


def test_missing_request(open_session):
    async def scenario():
        lifecycle = RequestLifecycle(await open_session(D1))
        await lifecycle.get_request(404)

    with pytest.raises(InvalidTransition):
        asyncio.run(scenario())


class TestMonotonicObservation:
    def test_status_going_backwards_is_flagged(self, ledger, open_session):
        """A ledger answer older than one already seen is reported, never adopted."""

        async def scenario():
            clinician = await open_session(DEMO_CLINICIAN_ID)
            request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "MRI", "Knee")
            lifecycle = RequestLifecycle(await open_session(D1))
            await lifecycle.assign_test(request.request_id)

            stale = replace(request, status=RequestStatus.REQUESTED)

            async def stale_read(request_id):
                return stale

            ledger.get_test_request = stale_read
            try:
                await lifecycle.get_request(request.request_id)
            finally:
                del ledger.get_test_request

        with pytest.raises(InvalidTransition):
            asyncio.run(scenario())

    def test_last_observed_tracks_highest_status(self, open_session):
        async def scenario():
            clinician = await open_session(DEMO_CLINICIAN_ID)
            request = await RequestLifecycle(clinician).create_request(DEMO_PATIENT_ID, "MRI", "Knee")
            lifecycle = RequestLifecycle(await open_session(D1))
            await lifecycle.get_request(request.request_id)
            first = lifecycle.last_observed(request.request_id)
            await lifecycle.assign_test(request.request_id)
            return first, lifecycle.last_observed(request.request_id)

        assert asyncio.run(scenario()) == (RequestStatus.REQUESTED, RequestStatus.ASSIGNED)
