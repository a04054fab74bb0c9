"""
Per-user client session.

Holds the ledger handle, the connected wallet and the identity classified
for it. Components receive the session explicitly, so two sessions (tabs,
test harnesses) never share mutable connection state.
"""
import logging
from typing import Awaitable, Callable, List, Optional

from ..models.ledger import Identity, Role
from ..services.identity_resolver import IdentityResolver
from .config import settings
from .errors import InvalidTransition, NotRegistered, PermissionDenied, WrongNetwork
from .permissions import require_capability

logger = logging.getLogger(__name__)


class ClientSession:
    def __init__(self, ledger, wallet_address: str, short_id: str, required_network_id: Optional[int] = None):
        self.ledger = ledger
        self.wallet_address = wallet_address
        self.short_id = short_id
        self.required_network_id = (
            required_network_id if required_network_id is not None else settings.REQUIRED_NETWORK_ID
        )
        self.resolver = IdentityResolver(ledger)
        self.role: str = Role.UNKNOWN
        self.identity: Optional[Identity] = None
        self._teardown_hooks: List[Callable[[], Awaitable[None]]] = []
        self._active = False
        self._closed = False

    async def init(self) -> "ClientSession":
        if self._closed:
            raise InvalidTransition("This session has ended. Please log in again.")
        network_id = await self.ledger.get_network_id()
        if network_id != self.required_network_id:
            raise WrongNetwork(
                f"Please switch your wallet to {settings.REQUIRED_NETWORK_NAME} "
                f"({settings.REQUIRED_RPC_URL}, Chain ID {self.required_network_id}). "
                f"Currently connected to network {network_id}."
            )
        role = await self.resolver.classify(self.wallet_address, self.short_id)
        if role == Role.UNKNOWN:
            raise NotRegistered(
                "Could not determine your role. Ensure your wallet account matches your registration."
            )
        self.role = role
        self.identity = await self.resolver.resolve(self.short_id, role)
        self._active = True
        logger.info("Session started for %s (%s)", self.short_id, role)
        return self

    async def login(self, password: str) -> "ClientSession":
        """Classify the wallet, then check its registry entry and password on the ledger."""
        await self.init()
        try:
            if not await self.ledger.is_registered(self.role, self.short_id):
                raise NotRegistered(f"{self.short_id} is not registered as a {self.role}.")
            if not await self.ledger.validate_password(self.role, self.short_id, password):
                raise PermissionDenied("Incorrect password.")
        except Exception:
            await self.teardown()
            raise
        logger.info("Credentials accepted for %s (%s)", self.short_id, self.role)
        return self

    def on_teardown(self, hook: Callable[[], Awaitable[None]]) -> None:
        self._teardown_hooks.append(hook)

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._active = False
        hooks, self._teardown_hooks = self._teardown_hooks, []
        for hook in reversed(hooks):
            try:
                await hook()
            except Exception as exc:
                logger.warning("Teardown hook failed for %s: %s", self.short_id, exc)
        logger.info("Session closed for %s", self.short_id)

    def require_active(self) -> Identity:
        if not self._active or self.identity is None:
            raise InvalidTransition("Session is not active. Please reconnect your wallet.")
        return self.identity

    def require(self, capability: str) -> Identity:
        identity = self.require_active()
        require_capability(self.role, capability)
        return identity

    async def __aenter__(self) -> "ClientSession":
        return await self.init()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown()
