from sqlalchemy import Column, String, Integer
from .base import Base, TimestampMixin, generate_uuid


class AuditLog(Base, TimestampMixin):
    """Local access trail for requests touching patient data. Never authoritative."""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=generate_uuid)
    wallet_address = Column(String(42), nullable=False, index=True)
    short_id = Column(String(50), nullable=True)
    action = Column(String(20), nullable=False)  # view, create, update, delete
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(100), nullable=True)
    request_method = Column(String(10), nullable=False)
    request_path = Column(String(500), nullable=False)
    status_code = Column(Integer, nullable=True)
    ip_address = Column(String(45), nullable=True)
