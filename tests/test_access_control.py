"""Tests for the access-control gate and patient consent management."""
import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consentlink.core.errors import LedgerUnavailable, NotRegistered, PermissionDenied
from consentlink.seed_demo import DEMO_CLINICIAN_ID, DEMO_CLINICIAN_WALLET, DEMO_PATIENT_ID
from consentlink.services.access_control import (
    AccessControlGate,
    AccessDecision,
    AdvisoryPermissionCache,
    ConsentService,
)


class _MalformedLedger:
    async def is_permission_granted(self, patient_id, clinician_id):
        return "true"


def test_no_grant_is_denied(ledger):
    gate = AccessControlGate(ledger)
    assert asyncio.run(gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)) == AccessDecision.DENIED


def test_grant_then_verify(ledger, open_session):
    gate = AccessControlGate(ledger)

    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        change = await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)
        return change, await gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)

    change, decision = asyncio.run(scenario())
    assert change.granted and change.changed
    assert decision == AccessDecision.GRANTED


def test_grant_writes_record_view_and_storage_access(ledger, open_session):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)
        return await ledger.get_patient_records(DEMO_PATIENT_ID, sender=DEMO_CLINICIAN_WALLET)

    assert asyncio.run(scenario()) == []


def test_second_grant_is_not_rewritten(ledger, open_session):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        consent = ConsentService(patient)
        await consent.grant_access(DEMO_CLINICIAN_ID)
        return await consent.grant_access(DEMO_CLINICIAN_ID)

    change = asyncio.run(scenario())
    assert change.granted
    assert change.changed is False


def test_revoke_takes_effect_on_next_check(ledger, open_session):
    """After revoke completes, the very next verification is denied."""
    gate = AccessControlGate(ledger)

    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        consent = ConsentService(patient)
        await consent.grant_access(DEMO_CLINICIAN_ID)
        before = await gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)
        await consent.revoke_access(DEMO_CLINICIAN_ID)
        after = await gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)
        return before, after

    assert asyncio.run(scenario()) == (AccessDecision.GRANTED, AccessDecision.DENIED)


def test_grant_to_unknown_clinician(open_session):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await ConsentService(patient).grant_access("C999999")

    with pytest.raises(NotRegistered):
        asyncio.run(scenario())


def test_clinician_cannot_grant(open_session):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        await ConsentService(clinician).grant_access(DEMO_CLINICIAN_ID)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


class TestFailClosed:
    def test_unreachable_ledger_is_unverified(self, ledger):
        ledger.fail_next("is_permission_granted")
        gate = AccessControlGate(ledger)
        assert asyncio.run(gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)) == AccessDecision.UNVERIFIED

    def test_unverified_never_grants_even_when_granted_on_ledger(self, ledger, open_session):
        gate = AccessControlGate(ledger)

        async def scenario():
            patient = await open_session(DEMO_PATIENT_ID)
            await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)
            ledger.fail_next("is_permission_granted")
            return await gate.check_access(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)

        assert asyncio.run(scenario()) is False

    def test_require_access_raises_unavailable(self, ledger):
        ledger.fail_next("is_permission_granted")
        gate = AccessControlGate(ledger)
        with pytest.raises(LedgerUnavailable):
            asyncio.run(gate.require_access(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID))

    def test_require_access_raises_denied(self, ledger):
        gate = AccessControlGate(ledger)
        with pytest.raises(PermissionDenied) as exc:
            asyncio.run(gate.require_access(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID))
        assert "has not granted permission" in exc.value.message

    def test_malformed_answer_is_unverified(self):
        gate = AccessControlGate(_MalformedLedger())
        assert asyncio.run(gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID)) == AccessDecision.UNVERIFIED


class TestAdvisoryCache:
    def test_gate_records_hint(self, ledger, local_db):
        cache = AdvisoryPermissionCache(DEMO_CLINICIAN_ID, session_factory=local_db)
        gate = AccessControlGate(ledger, cache=cache)
        asyncio.run(gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID))
        assert cache.hint(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID) is False

    def test_stale_positive_hint_does_not_grant(self, ledger, local_db):
        cache = AdvisoryPermissionCache(DEMO_CLINICIAN_ID, session_factory=local_db)
        cache.record(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID, True)
        gate = AccessControlGate(ledger, cache=cache)

        decision = asyncio.run(gate.verify(DEMO_CLINICIAN_ID, DEMO_PATIENT_ID))

        assert decision == AccessDecision.DENIED
        assert cache.hint(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID) is False

    def test_hint_is_none_before_any_check(self, local_db):
        cache = AdvisoryPermissionCache(DEMO_CLINICIAN_ID, session_factory=local_db)
        assert cache.hint(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID) is None

    def test_consent_change_forgets_hint(self, ledger, local_db, open_session):
        cache = AdvisoryPermissionCache(DEMO_PATIENT_ID, session_factory=local_db)
        cache.record(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID, False)

        async def scenario():
            patient = await open_session(DEMO_PATIENT_ID)
            await ConsentService(patient, cache=cache).grant_access(DEMO_CLINICIAN_ID)

        asyncio.run(scenario())
        assert cache.hint(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID) is None

    def test_hints_are_per_owner(self, local_db):
        mine = AdvisoryPermissionCache(DEMO_CLINICIAN_ID, session_factory=local_db)
        other = AdvisoryPermissionCache("C000001", session_factory=local_db)
        mine.record(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID, True)
        assert other.hint(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID) is None

    def test_local_store_failure_does_not_mask_ledger_write(self, ledger, open_session):
        # No tables: every hint read or write against this store fails
        broken_store = sessionmaker(bind=create_engine("sqlite://"))
        cache = AdvisoryPermissionCache(DEMO_PATIENT_ID, session_factory=broken_store)

        async def scenario():
            patient = await open_session(DEMO_PATIENT_ID)
            consent = ConsentService(patient, cache=cache)
            granted = await consent.grant_access(DEMO_CLINICIAN_ID)
            revoked = await consent.revoke_access(DEMO_CLINICIAN_ID)
            return granted, revoked

        granted, revoked = asyncio.run(scenario())
        assert granted.granted and granted.changed
        assert revoked.changed and not revoked.granted
        assert not asyncio.run(ledger.is_permission_granted(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID))
