"""
Audit logging middleware.
Auto-logs all requests to endpoints touching patient data (records, requests, access).
The trail is local and advisory; the ledger remains the system of record.
"""
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from ..models.audit import AuditLog
from ..models.base import generate_uuid
from ..models import base as models_base

logger = logging.getLogger(__name__)

# Endpoints that touch patient data - requests to these paths are logged
PHI_PATH_PREFIXES = (
    "/api/v1/patients",
    "/api/v1/requests",
    "/api/v1/access",
)

WALLET_HEADER = "X-Wallet-Address"
SHORT_ID_HEADER = "X-Short-Id"


class AuditMiddleware(BaseHTTPMiddleware):
    """Middleware that auto-logs access to patient data endpoints."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        path = request.url.path
        if not any(path.startswith(prefix) for prefix in PHI_PATH_PREFIXES):
            return response

        if request.method not in ("GET", "POST", "PUT", "PATCH", "DELETE"):
            return response

        wallet_address = request.headers.get(WALLET_HEADER) or "anonymous"
        short_id = request.headers.get(SHORT_ID_HEADER)

        # Derive resource type and ID from path
        parts = [p for p in path.split("/") if p]
        resource_type = parts[2] if len(parts) >= 3 else "unknown"
        resource_id = parts[3] if len(parts) >= 4 else None

        action_map = {
            "GET": "view",
            "POST": "create",
            "PUT": "update",
            "PATCH": "update",
            "DELETE": "delete",
        }
        action = action_map.get(request.method, request.method.lower())

        ip_address = request.client.host if request.client else None

        db = models_base.SessionLocal()
        try:
            db.add(
                AuditLog(
                    id=generate_uuid(),
                    wallet_address=wallet_address[:42],
                    short_id=short_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    request_method=request.method,
                    request_path=path,
                    status_code=response.status_code,
                    ip_address=ip_address,
                )
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning(
                "Audit log write failed for %s %s (wallet=%s): %s",
                request.method, path, wallet_address, exc,
            )
        finally:
            db.close()

        return response
