"""
Role capability matrix for ConsentLink.
Defines what each registered role may initiate. Cross-party reads are still
gated by the patient's ledger grant; this matrix only rules out actions a
role can never take.
"""
from ..models.ledger import Role
from .errors import PermissionDenied

# Capability constants
CAP_REQUEST_TEST = "request_test"
CAP_VIEW_PATIENT_RECORDS = "view_patient_records"
CAP_VIEW_PATIENT_LIST = "view_patient_list"
CAP_START_CALL = "start_call"
CAP_GRANT_ACCESS = "grant_access"
CAP_REVOKE_ACCESS = "revoke_access"
CAP_UPLOAD_RECORD = "upload_record"
CAP_VIEW_OWN_RECORDS = "view_own_records"
CAP_ASSIGN_TEST = "assign_test"
CAP_UPLOAD_REPORT = "upload_report"
CAP_LINK_REPORT = "link_report"
CAP_APPROVE_REPORT = "approve_report"

# Role capability matrix
ROLE_CAPABILITIES: dict = {
    Role.PATIENT: {
        CAP_GRANT_ACCESS,
        CAP_REVOKE_ACCESS,
        CAP_UPLOAD_RECORD,
        CAP_VIEW_OWN_RECORDS,
        CAP_START_CALL,
    },
    Role.CLINICIAN: {
        CAP_REQUEST_TEST,
        CAP_VIEW_PATIENT_RECORDS,
        CAP_VIEW_PATIENT_LIST,
        CAP_START_CALL,
    },
    Role.DIAGNOSTIC_CENTER: {
        CAP_ASSIGN_TEST,
        CAP_UPLOAD_REPORT,
        CAP_LINK_REPORT,
        CAP_APPROVE_REPORT,
    },
    # Unknown identities get nothing
    Role.UNKNOWN: set(),
}


def has_permission(role: str, capability: str) -> bool:
    """Check if a role has a specific capability."""
    return capability in ROLE_CAPABILITIES.get(role, set())


def require_capability(role: str, capability: str) -> None:
    if not has_permission(role, capability):
        raise PermissionDenied(f"A {role} account cannot perform '{capability}'.")
