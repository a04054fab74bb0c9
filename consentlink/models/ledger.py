"""
Domain types mirrored from the ledger registries.
The ledger is the source of truth; these are read snapshots only.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TEST_TYPES = (
    "Blood Test",
    "X-Ray",
    "MRI",
    "CT Scan",
    "Urine Test",
    "ECG",
    "Ultrasound",
    "Endoscopy",
    "Colonoscopy",
    "Biopsy",
    "Other",
)


class Role:
    PATIENT = "patient"
    CLINICIAN = "clinician"
    DIAGNOSTIC_CENTER = "diagnostic_center"
    UNKNOWN = "unknown"


# Fixed priority used when classifying a wallet against the registries
ROLE_PRIORITY = (Role.PATIENT, Role.CLINICIAN, Role.DIAGNOSTIC_CENTER)


class RequestStatus(str, Enum):
    REQUESTED = "REQUESTED"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"
    APPROVED = "APPROVED"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)


STATUS_ORDER = (
    RequestStatus.REQUESTED,
    RequestStatus.ASSIGNED,
    RequestStatus.COMPLETED,
    RequestStatus.APPROVED,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


@dataclass
class Identity:
    short_id: str
    role: str
    wallet_address: str
    display_name: str


@dataclass
class PermissionGrant:
    patient_id: str
    clinician_id: str
    granted_at: datetime = field(default_factory=utcnow)


@dataclass
class TestRequest:
    request_id: int
    patient_id: str
    clinician_id: str
    test_type: str
    description: str
    status: RequestStatus = RequestStatus.REQUESTED
    diagnostic_center_id: Optional[str] = None
    report_index: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    __test__ = False  # not a pytest class


@dataclass
class DiagnosticReport:
    report_index: int
    patient_id: str
    diagnostic_center_id: str
    content_hash: str
    test_type: str
    description: str
    diagnostic_center_name: str = ""
    is_approved: bool = False
    linked_request_id: Optional[int] = None
    uploaded_at: datetime = field(default_factory=utcnow)


@dataclass
class MedicalRecord:
    """A past record the patient uploaded themselves."""
    record_index: int
    patient_id: str
    content_hash: str
    file_name: str
    uploaded_at: datetime = field(default_factory=utcnow)
