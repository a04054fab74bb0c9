"""
Demo data seeder for the in-memory ledger.

Registers one patient, one clinician and two diagnostic centers with known
HH Numbers and wallets so the request, upload and call walkthroughs work
immediately after a fresh start without a deployed registry.

Identities:
  Patient          : P500600  / 0x5000...0001
  Clinician        : C100200  / 0xc100...0002
  Diagnostic center: D1       / 0xd100...0003
  Diagnostic center: D2       / 0xd200...0004

This seeder is idempotent; it is safe to call on every startup.
"""
import logging

from .models.ledger import Role

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "Demo1234!"

DEMO_PATIENT_ID = "P500600"
DEMO_PATIENT_WALLET = "0x5000000000000000000000000000000000000001"

DEMO_CLINICIAN_ID = "C100200"
DEMO_CLINICIAN_WALLET = "0xc100000000000000000000000000000000000002"

DEMO_CENTER_IDS = ("D1", "D2")
DEMO_CENTER_WALLETS = (
    "0xd100000000000000000000000000000000000003",
    "0xd200000000000000000000000000000000000004",
)

DEMO_IDENTITIES = (
    (Role.PATIENT, DEMO_PATIENT_ID, DEMO_PATIENT_WALLET, "John Demo"),
    (Role.CLINICIAN, DEMO_CLINICIAN_ID, DEMO_CLINICIAN_WALLET, "Dr. Demo Physician"),
    (Role.DIAGNOSTIC_CENTER, DEMO_CENTER_IDS[0], DEMO_CENTER_WALLETS[0], "Central Diagnostics"),
    (Role.DIAGNOSTIC_CENTER, DEMO_CENTER_IDS[1], DEMO_CENTER_WALLETS[1], "Northside Imaging"),
)


def seed_demo_ledger(ledger) -> None:
    """Register the demo identities on ``ledger`` if they are not there yet."""
    for role, short_id, wallet, name in DEMO_IDENTITIES:
        if ledger.has_identity(role, short_id):
            continue
        ledger.register(role, short_id, wallet, name, password=DEMO_PASSWORD)
        logger.info("[seed] Registered demo %s: %s (%s)", role, short_id, wallet)
