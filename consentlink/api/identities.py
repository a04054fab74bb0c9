from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel
from typing import List, Optional

from ..core.permissions import ROLE_CAPABILITIES
from ..core.session import ClientSession
from ..models.ledger import Identity
from ..services.identity_resolver import IdentityResolver
from ..services.ledger import LedgerAdapter
from .deps import get_ledger, get_session

router = APIRouter(prefix="/identities", tags=["identities"])


class IdentityResponse(BaseModel):
    short_id: str
    role: str
    wallet_address: str
    display_name: str

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            short_id=identity.short_id,
            role=identity.role,
            wallet_address=identity.wallet_address,
            display_name=identity.display_name,
        )


class SessionResponse(BaseModel):
    identity: IdentityResponse
    capabilities: List[str]

    @classmethod
    def from_session(cls, session: ClientSession) -> "SessionResponse":
        return cls(
            identity=IdentityResponse.from_identity(session.identity),
            capabilities=sorted(ROLE_CAPABILITIES.get(session.role, ())),
        )


class LoginRequest(BaseModel):
    password: str


@router.post("/login", response_model=SessionResponse)
async def login(
    body: LoginRequest,
    x_wallet_address: str = Header(..., description="Connected wallet address"),
    x_short_id: str = Header(..., description="HH Number the wallet logs in as"),
    ledger: LedgerAdapter = Depends(get_ledger),
):
    """Check the wallet's registration and password against the ledger."""
    session = ClientSession(ledger, x_wallet_address, x_short_id)
    await session.login(body.password)
    try:
        return SessionResponse.from_session(session)
    finally:
        await session.teardown()


@router.get("/me", response_model=SessionResponse)
async def whoami(session: ClientSession = Depends(get_session)):
    """Role classified for the connected wallet, with what it may do."""
    return SessionResponse.from_session(session)


@router.get("/{short_id}", response_model=IdentityResponse)
async def lookup(
    short_id: str,
    role: Optional[str] = None,
    ledger: LedgerAdapter = Depends(get_ledger),
):
    identity = await IdentityResolver(ledger).resolve(short_id, role)
    return IdentityResponse.from_identity(identity)
