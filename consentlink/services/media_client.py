"""
Media session client.
Fetches a per-user token from the video backend and hands back the session
handle the media SDK joins with. Supports mock mode for development when the
video backend is unavailable. Codec negotiation and ICE/TURN live in the SDK.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import httpx

from ..core.config import settings
from ..core.errors import MediaSessionError
from ..models.ledger import Identity

logger = logging.getLogger(__name__)


@dataclass
class MediaSession:
    room_id: str
    user_id: str
    token: str
    call_type: str = "default"
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MediaSessionClient(Protocol):
    async def join(self, room_id: str, user: Identity) -> MediaSession: ...

    async def leave(self, session: MediaSession) -> None: ...


class StreamMediaClient:
    """Token-authenticated media sessions keyed by the shared room id."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        mock_mode: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.STREAM_API_BASE_URL
        self.api_key = api_key if api_key is not None else settings.STREAM_API_KEY
        self.timeout = timeout or settings.MEDIA_TIMEOUT
        self.mock_mode = settings.MEDIA_MOCK_MODE if mock_mode is None else mock_mode
        self._transport = transport
        self.active: Dict[str, MediaSession] = {}

    async def _fetch_token(self, wallet_address: str) -> str:
        if self.mock_mode or not self.base_url:
            logger.debug("Using mock media token (mock_mode=%s)", self.mock_mode)
            return f"mock-token-{wallet_address.lower()}"

        url = f"{self.base_url.rstrip('/')}/auth/token"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json={"walletAddress": wallet_address})
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Media token request rejected: %s", exc)
            raise MediaSessionError(f"Failed to get video token (HTTP {exc.response.status_code}).") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Media token endpoint unavailable: %s", exc)
            raise MediaSessionError("Failed to get video token. Please try again.") from exc

        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise MediaSessionError("Invalid token response from server.")
        return token

    async def join(self, room_id: str, user: Identity) -> MediaSession:
        if not self.mock_mode and not self.api_key:
            raise MediaSessionError("Video API key not configured.")
        token = await self._fetch_token(user.wallet_address)
        session = MediaSession(room_id=room_id, user_id=user.wallet_address.lower(), token=token)
        self.active[room_id] = session
        logger.info("Joined media room %s as %s", room_id, user.short_id)
        return session

    async def leave(self, session: MediaSession) -> None:
        if self.active.pop(session.room_id, None) is not None:
            logger.info("Left media room %s", session.room_id)
