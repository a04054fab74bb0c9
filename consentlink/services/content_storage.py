"""
Content-addressed storage for medical files.
Files are pinned to IPFS through Pinata in production; without a Pinata JWT
they go to a local directory keyed by their SHA-256 digest for development.
The upload policy is checked before any bytes leave the process.
"""
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx

from ..core.config import settings
from ..core.errors import StorageUploadFailed, UploadRejected

logger = logging.getLogger(__name__)


@dataclass
class UploadPolicy:
    allowed_types: Iterable[str]
    max_bytes: int

    @classmethod
    def from_settings(cls) -> "UploadPolicy":
        return cls(allowed_types=tuple(settings.ALLOWED_UPLOAD_TYPES), max_bytes=settings.MAX_UPLOAD_BYTES)

    def check(self, filename: str, content_type: str, size: int) -> None:
        if not filename or size == 0:
            raise UploadRejected("Invalid file. Please select a valid file to upload.")
        if content_type not in self.allowed_types:
            raise UploadRejected("Please select a PDF or image file (JPEG, PNG).")
        if size > self.max_bytes:
            limit_mb = self.max_bytes // (1024 * 1024)
            raise UploadRejected(f"File size should be less than {limit_mb}MB.")


class ContentStorageService:
    """Upload files and build gateway URLs for them."""

    def __init__(
        self,
        policy: Optional[UploadPolicy] = None,
        base_dir: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.policy = policy or UploadPolicy.from_settings()
        self.base_dir = base_dir or settings.LOCAL_STORAGE_DIR or os.path.join(os.getcwd(), "uploads")
        self.jwt = settings.PINATA_JWT
        self.api_url = settings.PINATA_API_URL.rstrip("/")
        self.timeout = settings.PINATA_TIMEOUT
        self.gateway = settings.IPFS_GATEWAY_URL.rstrip("/")
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upload(self, data: bytes, filename: str, content_type: str) -> str:
        """Store ``data`` and return its content hash."""
        self.policy.check(filename, content_type, len(data))
        if self.jwt:
            content_hash = await self._pin_to_ipfs(data, filename, content_type)
        else:
            content_hash = self._save_local(data)
        logger.info("Stored %s (%d bytes) as %s", filename, len(data), content_hash)
        return content_hash

    def gateway_url(self, content_hash: str) -> str:
        return f"{self.gateway}/ipfs/{content_hash}"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _save_local(self, data: bytes) -> str:
        """Save to the local ``uploads/`` directory for development."""
        digest = hashlib.sha256(data).hexdigest()
        os.makedirs(self.base_dir, exist_ok=True)
        filepath = os.path.join(self.base_dir, digest)
        if not os.path.exists(filepath):
            with open(filepath, "wb") as fh:
                fh.write(data)
        return digest

    async def _pin_to_ipfs(self, data: bytes, filename: str, content_type: str) -> str:
        metadata = {
            "name": filename,
            "keyvalues": {
                "uploadedBy": settings.APP_NAME,
                "uploadDate": datetime.now(timezone.utc).isoformat(),
            },
        }
        form = {
            "pinataMetadata": json.dumps(metadata),
            "pinataOptions": json.dumps({"cidVersion": 1, "wrapWithDirectory": False}),
        }
        files = {"file": (filename, data, content_type)}
        headers = {"Authorization": f"Bearer {self.jwt}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.api_url}/pinning/pinFileToIPFS", data=form, files=files, headers=headers
                )
        except httpx.TimeoutException as exc:
            raise StorageUploadFailed("File upload timeout. Please try again.") from exc
        except httpx.HTTPError as exc:
            logger.warning("Pinata unreachable: %s", exc)
            raise StorageUploadFailed("Failed to connect to Pinata. Check your internet connection.") from exc

        if resp.status_code in (401, 403):
            raise StorageUploadFailed("Pinata authentication failed. Please verify the Pinata JWT.")
        if resp.status_code == 429:
            raise StorageUploadFailed("Rate limit exceeded. Please wait a moment and retry.")
        if resp.status_code >= 400:
            logger.warning("Pinata upload failed with HTTP %s: %s", resp.status_code, resp.text[:200])
            raise StorageUploadFailed(f"Failed to upload file to Pinata (HTTP {resp.status_code}).")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise StorageUploadFailed("Failed to retrieve IPFS hash from Pinata response.") from exc
        content_hash = payload.get("cid") or payload.get("IpfsHash")
        if not content_hash:
            raise StorageUploadFailed("Failed to retrieve IPFS hash from Pinata response.")
        return content_hash
