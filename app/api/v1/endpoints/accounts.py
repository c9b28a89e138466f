# app/api/v1/endpoints/accounts.py
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.deps import (
    decode_sample,
    get_identity_store,
    get_ledger,
    get_notifier,
    get_orchestrator,
)
from app.core.config import settings
from app.core.rate_limit import limiter
from app.domain.entities.risk import Account, TransactionCategory
from app.domain.services.profile_service import account_stability, build_profile, typical_locations
from app.domain.services.velocity_service import compute_velocity, remaining_headroom
from app.domain.services.verification_flow import VerificationOrchestrator
from app.infra.db.repositories import SqlIdentityStore, SqlLedger, SqlNotifier
from app.schemas.account_schemas import (
    AccountInsight,
    AccountResponse,
    EnrollmentRequest,
    HeadroomOut,
    IncidentOut,
    LocationOut,
    NotificationOut,
    ProfileOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


def _account_out(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        status=account.status.value,
        gender=account.gender.value if account.gender else None,
        created_at=account.created_at,
        reference_count=len(account.reference_vectors),
    )


async def _require_account(identity: SqlIdentityStore, account_id: str) -> Account:
    account = await identity.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return account


@router.post("", response_model=AccountResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT)
async def enroll_account(
    request: Request,
    body: EnrollmentRequest,
    identity: SqlIdentityStore = Depends(get_identity_store),
    orchestrator: VerificationOrchestrator = Depends(get_orchestrator),
):
    """Alta de cuenta con sus capturas de referencia (se guardan solo los embeddings)."""
    if await identity.get_account(body.account_id) is not None:
        raise HTTPException(status_code=409, detail=f"Account {body.account_id} already exists")

    samples = [decode_sample(s, "reference_samples_b64") for s in body.reference_samples_b64]
    vectors = [orchestrator.provider.embed(s).tolist() for s in samples]

    account = await identity.enroll_account(
        body.account_id,
        vectors,
        gender=body.gender,
        name=body.name,
    )
    logger.info(f"Cuenta {account.id} enrolada con {len(vectors)} referencias")
    return _account_out(account)


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: str,
    identity: SqlIdentityStore = Depends(get_identity_store),
):
    return _account_out(await _require_account(identity, account_id))


@router.get("/{account_id}/insight", response_model=AccountInsight)
async def account_insight(
    account_id: str,
    identity: SqlIdentityStore = Depends(get_identity_store),
    ledger: SqlLedger = Depends(get_ledger),
):
    """Perfil, cupos restantes, ubicaciones tipicas y estabilidad de la cuenta."""
    account = await _require_account(identity, account_id)
    history = await ledger.get_history(account_id)
    profile = build_profile(history)

    velocity = {}
    for category in TransactionCategory:
        totals = compute_velocity(account_id, category, history)
        if not totals.controlled:
            continue
        headroom = remaining_headroom(totals)
        velocity[category.value] = HeadroomOut(
            daily_total=totals.daily_total,
            weekly_total=totals.weekly_total,
            daily_remaining=headroom["daily"],
            weekly_remaining=headroom["weekly"],
        )

    return AccountInsight(
        account_id=account.id,
        status=account.status.value,
        profile=ProfileOut(
            transaction_count=profile.transaction_count,
            mean_amount=profile.mean_amount,
            stddev_amount=profile.stddev_amount,
            frequent_recipients=list(profile.frequent_recipients),
            typical_hours=list(profile.typical_hours),
        ),
        velocity=velocity,
        typical_locations=[LocationOut(city=loc.city, count=loc.count) for loc in typical_locations(history)],
        stability_score=account_stability(history),
    )


@router.get("/{account_id}/notifications", response_model=List[NotificationOut])
async def list_notifications(
    account_id: str,
    limit: int = 50,
    notifier: SqlNotifier = Depends(get_notifier),
):
    rows = await notifier.list_for_account(account_id, limit=limit)
    return [NotificationOut.model_validate(r) for r in rows]


@router.get("/{account_id}/incidents", response_model=List[IncidentOut])
async def list_incidents(
    account_id: str,
    ledger: SqlLedger = Depends(get_ledger),
):
    incidents = await ledger.list_incidents(account_id)
    return [
        IncidentOut(
            id=i.id,
            transaction_id=i.transaction_id,
            status=i.status.value,
            created_at=i.created_at,
            sample_size=len(i.captured_sample),
        )
        for i in incidents
    ]
