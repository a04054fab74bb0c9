"""
ConsentLink - consent-gated orchestration for ledger-backed medical records.
Test requests, diagnostic reports and record access are authorized by the
patient's grant on the ledger, read fresh for every privileged action.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import access, identities, records, requests
from .core.audit_middleware import AuditMiddleware
from .core.config import settings
from .core.errors import ConsentLinkError
from .models import audit, permission_cache  # noqa: F401  registers tables
from .models.base import Base, engine
from .services.content_storage import ContentStorageService
from .services.ledger import build_ledger

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Local, non-authoritative tables (audit trail, advisory permission hints)
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ConsentLink Medical Records API",
    description=(
        "Consent-gated access to ledger-backed medical records, diagnostic "
        "test requests and report linkage."
    ),
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(AuditMiddleware)

# In-memory ledger seeded with demo identities unless a gateway is configured
app.state.ledger = build_ledger()
app.state.storage = ContentStorageService()


@app.exception_handler(ConsentLinkError)
async def consentlink_error_handler(request: Request, exc: ConsentLinkError):
    logger.info("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ValueError)
async def validation_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


app.include_router(identities.router, prefix="/api/v1")
app.include_router(access.router, prefix="/api/v1")
app.include_router(requests.router, prefix="/api/v1")
app.include_router(records.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME, "version": settings.VERSION}
