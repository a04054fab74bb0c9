"""
Error taxonomy for the orchestration layer.

Every error carries a message the initiating user action can show as-is.
None of these are retried by this layer: a failed write is re-attempted by
the user after re-reading current state.
"""
from typing import Optional


class ConsentLinkError(Exception):
    """Base class for all surfaced orchestration errors."""

    status_code: int = 400
    default_message: str = "The operation could not be completed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class PermissionDenied(ConsentLinkError):
    status_code = 403
    default_message = "Access denied. The patient has not granted permission."


class NotRegistered(ConsentLinkError):
    status_code = 404
    default_message = "Identity not found. Please verify the HH Number."


class AlreadyAssigned(ConsentLinkError):
    status_code = 409
    default_message = (
        "This request has already been assigned. Refresh the pending requests and choose another."
    )


class InvalidTransition(ConsentLinkError):
    status_code = 409
    default_message = "This action is not allowed in the current state. Refresh and try again."


class LedgerUnavailable(ConsentLinkError):
    status_code = 503
    default_message = "Blockchain connection not ready. Check your wallet connection and network."


class WrongNetwork(LedgerUnavailable):
    """Connected to a network other than the one holding the registries."""


class TimedOut(ConsentLinkError):
    status_code = 408
    default_message = "Call request timed out."


class SignalingUnavailable(ConsentLinkError):
    status_code = 503
    default_message = "Call signaling is unavailable. Please try again later."


class RecipientOffline(SignalingUnavailable):
    default_message = "Recipient is offline."


class StorageUploadFailed(ConsentLinkError):
    status_code = 502
    default_message = "Failed to upload file to IPFS. Please retry."


class UploadRejected(StorageUploadFailed):
    """File refused by the upload policy before any upload was attempted."""

    status_code = 422
    default_message = "Please select a PDF or image file (JPEG, PNG)."


class MediaSessionError(ConsentLinkError):
    status_code = 502
    default_message = "Error connecting to call."
