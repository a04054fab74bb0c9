from sqlalchemy import Column, String, Boolean, DateTime, UniqueConstraint
from .base import Base, TimestampMixin, generate_uuid


class PermissionHint(Base, TimestampMixin):
    """
    Last observed outcome of a ledger permission check, kept so the UI can
    pre-fill state after a reload. Advisory only: privileged actions always
    re-read the ledger.
    """
    __tablename__ = "permission_hints"
    __table_args__ = (UniqueConstraint("owner_id", "patient_id", "clinician_id"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    owner_id = Column(String(50), nullable=False, index=True)  # short id of the local user
    patient_id = Column(String(50), nullable=False)
    clinician_id = Column(String(50), nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    checked_at = Column(DateTime(timezone=True), nullable=False)
