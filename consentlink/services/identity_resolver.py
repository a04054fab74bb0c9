"""
Role and address resolution against the identity registries.

A wallet's role is classified once per session by matching it against the
address registered for the given HH Number in each registry, in a fixed
priority order. Every identity seen along the way lands in a reverse index
so counterparties can be named from their wallet address without guessing.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ..core.errors import NotRegistered
from ..models.ledger import ROLE_PRIORITY, Identity, Role, same_address
from .ledger import LedgerAdapter, LedgerRevert, lookup_identity

logger = logging.getLogger(__name__)

UNRESOLVED_NAME = "Unresolved identity"


@dataclass
class Counterparty:
    """The other side of an interaction, known by wallet address."""
    wallet_address: str
    identity: Optional[Identity] = None

    @property
    def is_resolved(self) -> bool:
        return self.identity is not None

    @property
    def display_name(self) -> str:
        if self.identity is None:
            return UNRESOLVED_NAME
        return self.identity.display_name or self.identity.short_id


class IdentityResolver:
    def __init__(self, ledger: LedgerAdapter):
        self.ledger = ledger
        self._by_address: Dict[str, Identity] = {}

    def remember(self, identities: Iterable[Identity]) -> None:
        for identity in identities:
            if identity.wallet_address:
                self._by_address[identity.wallet_address.lower()] = identity

    async def _lookup(self, role: str, short_id: str) -> Optional[Identity]:
        try:
            identity = await lookup_identity(self.ledger, role, short_id)
        except LedgerRevert:
            # Some registry builds revert instead of returning an empty record
            return None
        if identity is not None:
            self.remember([identity])
        return identity

    async def find(self, short_id: str, role: str) -> Optional[Identity]:
        return await self._lookup(role, short_id)

    async def resolve(self, short_id: str, role: Optional[str] = None) -> Identity:
        """Look an HH Number up in one registry, or in all of them by priority."""
        roles = (role,) if role else ROLE_PRIORITY
        for candidate in roles:
            identity = await self._lookup(candidate, short_id)
            if identity is not None:
                return identity
        label = "Doctor" if role == Role.CLINICIAN else "Identity"
        raise NotRegistered(f"{label} not found. Please verify the HH Number {short_id}.")

    async def classify(self, wallet_address: str, context_short_id: str) -> str:
        """
        Return the role whose registry holds ``context_short_id`` registered to
        ``wallet_address``, or ``Role.UNKNOWN``. Callers must treat UNKNOWN as
        a hard failure.
        """
        for role in ROLE_PRIORITY:
            identity = await self._lookup(role, context_short_id)
            if identity is not None and same_address(identity.wallet_address, wallet_address):
                logger.info("Classified %s as %s", context_short_id, role)
                return role
        logger.warning("Wallet %s does not own HH Number %s in any registry", wallet_address, context_short_id)
        return Role.UNKNOWN

    def counterparty(self, wallet_address: str) -> Counterparty:
        identity = self._by_address.get((wallet_address or "").lower())
        return Counterparty(wallet_address=wallet_address, identity=identity)
