"""Shared fixtures: a seeded in-memory ledger, sessions on it and a local SQLite store."""
import os

# Keep the local store in memory and uploads off the network for the whole run
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["PINATA_JWT"] = ""
os.environ["LEDGER_MOCK_MODE"] = "true"
os.environ["MEDIA_MOCK_MODE"] = "true"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import consentlink.models.audit  # noqa: F401  registers audit_logs
import consentlink.models.permission_cache  # noqa: F401  registers permission_hints
from consentlink.core.session import ClientSession
from consentlink.models import base as models_base
from consentlink.models.base import Base
from consentlink.seed_demo import DEMO_IDENTITIES, seed_demo_ledger
from consentlink.services.content_storage import ContentStorageService, UploadPolicy
from consentlink.services.memory_ledger import InMemoryLedger

WALLETS = {short_id: wallet for _role, short_id, wallet, _name in DEMO_IDENTITIES}

PATIENT = "P500600"
CLINICIAN = "C100200"
CENTER_1 = "D1"
CENTER_2 = "D2"

PDF = b"%PDF-1.4 demo report"


@pytest.fixture()
def ledger():
    ledger = InMemoryLedger(network_id=1337)
    seed_demo_ledger(ledger)
    return ledger


@pytest.fixture()
def open_session(ledger):
    """Async factory: ``await open_session("P500600")`` returns an initialized session."""

    async def _open(short_id, wallet=None):
        session = ClientSession(ledger, wallet or WALLETS[short_id], short_id, required_network_id=1337)
        return await session.init()

    return _open


@pytest.fixture()
def local_db(monkeypatch):
    """Isolated in-memory SQLite for audit rows and permission hints."""
    test_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    TestSession = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    monkeypatch.setattr(models_base, "SessionLocal", TestSession)
    return TestSession


@pytest.fixture()
def storage(tmp_path):
    policy = UploadPolicy(
        allowed_types=("application/pdf", "image/jpeg", "image/png", "image/jpg"),
        max_bytes=10 * 1024 * 1024,
    )
    service = ContentStorageService(policy=policy, base_dir=str(tmp_path / "uploads"))
    service.jwt = None
    return service
