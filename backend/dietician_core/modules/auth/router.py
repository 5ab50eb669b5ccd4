"""Auth endpoints: OAuth code exchange and encryption health probe."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from dietician_core.core.audit import AuditCapture, get_audit_capture
from dietician_core.core.config import ConfigurationError
from dietician_core.core.encryption import get_field_cipher
from dietician_core.core.exchange_store import (
    ExchangeCodeStore,
    ExchangeStoreUnavailable,
    get_exchange_store,
)
from dietician_core.core.logging import get_logger
from dietician_core.modules.auth.schemas import ExchangeRequest, ExchangeResponse, HealthResponse
from dietician_core.modules.auth.service import redeem_exchange_code

logger = get_logger(__name__)
router = APIRouter()

ExchangeStore = Annotated[ExchangeCodeStore, Depends(get_exchange_store)]
Capture = Annotated[AuditCapture, Depends(get_audit_capture)]


@router.post("/oauth2/exchange", response_model=ExchangeResponse)
async def exchange_code(
    body: ExchangeRequest,
    store: ExchangeStore,
    capture: Capture,
) -> ExchangeResponse:
    """Exchange a one-time OAuth code for the login result."""
    try:
        payload = await redeem_exchange_code(store, capture, body.code)
    except ExchangeStoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Code exchange is temporarily unavailable",
        )
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired code",
        )
    return ExchangeResponse.model_validate(payload)


@router.get("/health", response_model=HealthResponse)
async def health() -> JSONResponse:
    """Round-trip a probe value through the configured cipher."""
    try:
        cipher = get_field_cipher()
    except ConfigurationError as e:
        logger.error("encryption_health_unconfigured", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "encryption": "unconfigured"},
        )

    if not cipher.self_check():
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "encryption": "failing"},
        )
    return JSONResponse(content={"status": "ok", "encryption": "working"})
