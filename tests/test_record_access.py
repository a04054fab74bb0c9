"""Tests for record listing and patient uploads."""
import asyncio

import pytest

from consentlink.core.errors import LedgerUnavailable, PermissionDenied
from consentlink.seed_demo import DEMO_CENTER_IDS, DEMO_CLINICIAN_ID, DEMO_PATIENT_ID
from consentlink.services.access_control import AccessControlGate, ConsentService
from consentlink.services.record_access import RecordAccess

PDF = b"%PDF-1.4 discharge summary"


def test_patient_uploads_and_lists_own_records(ledger, open_session, storage):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        access = RecordAccess(patient, AccessControlGate(ledger), storage)
        record = await access.upload_record(PDF, "summary.pdf", "application/pdf")
        return record, await access.my_records()

    record, files = asyncio.run(scenario())
    assert record.file_name == "summary.pdf"
    assert len(files) == 1
    assert files[0].kind == "record"
    assert files[0].content_hash == record.content_hash
    assert files[0].url == f"{storage.gateway}/ipfs/{record.content_hash}"


def test_clinician_without_grant_is_denied(ledger, open_session, storage):
    async def scenario():
        clinician = await open_session(DEMO_CLINICIAN_ID)
        await RecordAccess(clinician, AccessControlGate(ledger), storage).patient_records(DEMO_PATIENT_ID)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_clinician_with_grant_sees_records_and_reports(ledger, open_session, storage):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await RecordAccess(patient, AccessControlGate(ledger), storage).upload_record(
            PDF, "summary.pdf", "application/pdf"
        )
        center = await open_session(DEMO_CENTER_IDS[0])
        await ledger.upload_diagnostic_report(
            DEMO_PATIENT_ID, center.short_id, "ECG", "bafyecg", "Central Diagnostics", "", sender=center.wallet_address
        )
        await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)

        clinician = await open_session(DEMO_CLINICIAN_ID)
        return await RecordAccess(clinician, AccessControlGate(ledger), storage).patient_records(DEMO_PATIENT_ID)

    result = asyncio.run(scenario())
    assert result.patient.short_id == DEMO_PATIENT_ID
    assert sorted(f.kind for f in result.files) == ["diagnostic", "record"]
    diagnostic = next(f for f in result.files if f.kind == "diagnostic")
    assert diagnostic.title == "ECG (Central Diagnostics)"
    assert diagnostic.is_approved is False


def test_revoked_clinician_is_denied_on_next_read(ledger, open_session, storage):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        consent = ConsentService(patient)
        await consent.grant_access(DEMO_CLINICIAN_ID)
        clinician = await open_session(DEMO_CLINICIAN_ID)
        access = RecordAccess(clinician, AccessControlGate(ledger), storage)
        await access.patient_records(DEMO_PATIENT_ID)
        await consent.revoke_access(DEMO_CLINICIAN_ID)
        await access.patient_records(DEMO_PATIENT_ID)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_storage_access_missing_is_permission_denied(ledger, open_session, storage):
    """A view grant without the storage-level grant still ends in PermissionDenied."""

    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await ledger.grant_permission(DEMO_PATIENT_ID, DEMO_CLINICIAN_ID, "John Demo", sender=patient.wallet_address)
        clinician = await open_session(DEMO_CLINICIAN_ID)
        await RecordAccess(clinician, AccessControlGate(ledger), storage).patient_records(DEMO_PATIENT_ID)

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())


def test_unreachable_ledger_blocks_listing(ledger, open_session, storage):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)
        clinician = await open_session(DEMO_CLINICIAN_ID)
        ledger.fail_next("is_permission_granted")
        await RecordAccess(clinician, AccessControlGate(ledger), storage).patient_records(DEMO_PATIENT_ID)

    with pytest.raises(LedgerUnavailable):
        asyncio.run(scenario())


def test_patient_list_names_counterparties(ledger, open_session, storage):
    async def scenario():
        patient = await open_session(DEMO_PATIENT_ID)
        await ConsentService(patient).grant_access(DEMO_CLINICIAN_ID)
        clinician = await open_session(DEMO_CLINICIAN_ID)
        patients = await RecordAccess(clinician, AccessControlGate(ledger), storage).patient_list()
        return patients, clinician.resolver.counterparty(patient.wallet_address)

    patients, counterparty = asyncio.run(scenario())
    assert [p.short_id for p in patients] == [DEMO_PATIENT_ID]
    assert counterparty.display_name == "John Demo"


def test_diagnostic_history_is_newest_first(ledger, open_session, storage):
    async def scenario():
        center = await open_session(DEMO_CENTER_IDS[0])
        for test_type in ("ECG", "MRI"):
            await ledger.upload_diagnostic_report(
                DEMO_PATIENT_ID, center.short_id, test_type, f"bafy{test_type}", "Central Diagnostics", "",
                sender=center.wallet_address,
            )
        patient = await open_session(DEMO_PATIENT_ID)
        return await RecordAccess(patient, AccessControlGate(ledger), storage).diagnostic_history()

    history = asyncio.run(scenario())
    assert [r.test_type for r in history] == ["MRI", "ECG"]
