# app/api/deps.py
import base64
import binascii
import logging

from fastapi import HTTPException, Request

from app.core.exceptions import (
    AccountBlockedError,
    CollaboratorError,
    InvalidTransitionError,
    PolicyViolation,
    RiskEngineError,
    UnknownTransactionError,
    ValidationError,
)
from app.domain.services.verification_flow import VerificationOrchestrator
from app.infra.db.repositories import SqlIdentityStore, SqlLedger, SqlNotifier

logger = logging.getLogger(__name__)

# Orden importa: AccountBlockedError es subclase de ValidationError
_STATUS_CODES = (
    (AccountBlockedError, 403),
    (ValidationError, 422),
    (PolicyViolation, 422),
    (InvalidTransitionError, 409),
    (UnknownTransactionError, 404),
    (CollaboratorError, 503),
)


def get_orchestrator(request: Request) -> VerificationOrchestrator:
    return request.app.state.orchestrator


def get_ledger(request: Request) -> SqlLedger:
    return request.app.state.ledger


def get_identity_store(request: Request) -> SqlIdentityStore:
    return request.app.state.identity


def get_notifier(request: Request) -> SqlNotifier:
    return request.app.state.notifier


def http_error(exc: RiskEngineError) -> HTTPException:
    """Traduce una excepcion del dominio a HTTPException."""
    for cls, status_code in _STATUS_CODES:
        if isinstance(exc, cls):
            break
    else:
        status_code = 500

    if status_code >= 500:
        logger.error(f"❌ {exc}")
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def decode_sample(value: str, field: str = "sample_b64") -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"{field} is not valid base64: {e}")
