"""
FastAPI application entrypoint.

Run locally:  uvicorn patient_lifecycle.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from patient_lifecycle.api.routes import router
from patient_lifecycle.config import settings
from patient_lifecycle.errors import ErrorCode, LifecycleError
from patient_lifecycle.models.database import Base, engine

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ErrorCode.PATIENT_NOT_FOUND: 404,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.STATUS_CONFLICT: 409,
    ErrorCode.PATIENT_EXISTS: 409,
    ErrorCode.REASON_REQUIRED: 422,
    ErrorCode.PROTECTED_ENTRY: 403,
    ErrorCode.AUDIT_WRITE_FAILURE: 503,
}

app = FastAPI(
    title="Patient Lifecycle & Audit API",
    description=(
        "Patient status lifecycle with a validated transition policy, "
        "a tamper-evident audit trail with retention-based purge, "
        "and universal access logging."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(LifecycleError)
def lifecycle_error_handler(request: Request, exc: LifecycleError):
    status_code = STATUS_CODES.get(exc.code, 400)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": exc.code.value, "message": exc.message}},
    )


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
