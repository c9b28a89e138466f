# app/api/v1/endpoints/transactions.py
import logging

from fastapi import APIRouter, Depends, Request

from app.api.deps import decode_sample, get_orchestrator, http_error
from app.core.config import settings
from app.core.exceptions import CollaboratorError, RiskEngineError
from app.core.rate_limit import limiter
from app.domain.services.verification_flow import VerificationOrchestrator
from app.schemas.transaction_schemas import (
    BiometricResultSubmission,
    BiometricSubmission,
    DenyRequest,
    OtpSubmission,
    TransactionSubmission,
    WorkflowResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _respond(orchestrator: VerificationOrchestrator, transaction_id: str) -> WorkflowResponse:
    """Snapshot del flujo; si quedo en estado terminal se programa el reset."""
    workflow = orchestrator.get_workflow(transaction_id)
    snapshot = WorkflowResponse(**workflow.snapshot())
    if workflow.is_terminal:
        orchestrator.schedule_reset(transaction_id)
    return snapshot


def _handle(orchestrator: VerificationOrchestrator, exc: RiskEngineError):
    # Un fallo de colaborador deja el flujo en ERROR: tambien se resetea
    if isinstance(exc, CollaboratorError) and exc.transaction_id:
        orchestrator.schedule_reset(exc.transaction_id)
    return http_error(exc)


@router.post("", response_model=WorkflowResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT)
async def submit_transaction(
    request: Request,
    body: TransactionSubmission,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        tx_id = await orchestrator.submit_transaction(
            body.account_id,
            body.recipient,
            body.amount,
            body.category,
            submitted_at=body.submitted_at,
            location_status=body.location_status,
            place_name=body.place_name,
            latitude=body.latitude,
            longitude=body.longitude,
            high_value_confirmed=body.high_value_confirmed,
        )
        return _respond(orchestrator, tx_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.get("/{transaction_id}", response_model=WorkflowResponse)
async def get_transaction(
    transaction_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        return WorkflowResponse(**orchestrator.get_workflow(transaction_id).snapshot())
    except RiskEngineError as e:
        raise http_error(e)


@router.post("/{transaction_id}/confirm-high-value", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def confirm_high_value(
    request: Request,
    transaction_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.confirm_high_value(transaction_id)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/confirm", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def confirm(
    request: Request,
    transaction_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.confirm(transaction_id)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/deny", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def deny(
    request: Request,
    transaction_id: str,
    body: DenyRequest,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.deny(transaction_id, block=body.block_account)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/otp", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def submit_otp(
    request: Request,
    transaction_id: str,
    body: OtpSubmission,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.submit_otp(transaction_id, body.code)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/biometric", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def verify_biometric_sample(
    request: Request,
    transaction_id: str,
    body: BiometricSubmission,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    sample = decode_sample(body.sample_b64)
    try:
        await orchestrator.verify_biometric_sample(transaction_id, sample)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/biometric-result", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def submit_biometric_result(
    request: Request,
    transaction_id: str,
    body: BiometricResultSubmission,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    sample = decode_sample(body.sample_b64) if body.sample_b64 else b""
    try:
        await orchestrator.submit_biometric_result(transaction_id, body.match, body.reason, sample)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)


@router.post("/{transaction_id}/cancel", response_model=WorkflowResponse)
@limiter.limit(settings.RATE_LIMIT)
async def cancel(
    request: Request,
    transaction_id: str,
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.cancel(transaction_id)
        return _respond(orchestrator, transaction_id)
    except RiskEngineError as e:
        raise _handle(orchestrator, e)
