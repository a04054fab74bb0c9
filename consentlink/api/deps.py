"""Request-scoped dependencies: caller session and the services built on it."""
from typing import AsyncIterator

from fastapi import Depends, Header, Request

from ..core.session import ClientSession
from ..models import base as models_base
from ..services.access_control import AccessControlGate, AdvisoryPermissionCache
from ..services.content_storage import ContentStorageService
from ..services.ledger import LedgerAdapter


def get_ledger(request: Request) -> LedgerAdapter:
    return request.app.state.ledger


def get_storage(request: Request) -> ContentStorageService:
    return request.app.state.storage


async def get_session(
    x_wallet_address: str = Header(..., description="Connected wallet address"),
    x_short_id: str = Header(..., description="HH Number the wallet logs in as"),
    ledger: LedgerAdapter = Depends(get_ledger),
) -> AsyncIterator[ClientSession]:
    """One ClientSession per request, classified against the ledger before use."""
    session = ClientSession(ledger, x_wallet_address, x_short_id)
    await session.init()
    try:
        yield session
    finally:
        await session.teardown()


def get_cache(session: ClientSession = Depends(get_session)) -> AdvisoryPermissionCache:
    return AdvisoryPermissionCache(session.short_id, session_factory=lambda: models_base.SessionLocal())


def get_gate(
    session: ClientSession = Depends(get_session),
    cache: AdvisoryPermissionCache = Depends(get_cache),
) -> AccessControlGate:
    return AccessControlGate(session.ledger, cache=cache)
