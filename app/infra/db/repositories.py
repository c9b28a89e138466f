# app/infra/db/repositories.py
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.entities.risk import (
    Account,
    AccountStatus,
    Gender,
    Incident,
    IncidentStatus,
    NotificationType,
    RecordedTransaction,
    RiskTier,
    TransactionCategory,
    TransactionStatus,
    VelocityTotals,
)
from app.domain.services.velocity_service import compute_velocity
from app.infra.db.models.account import AccountModel
from app.infra.db.models.incident import IncidentModel
from app.infra.db.models.notification import NotificationModel
from app.infra.db.models.transaction import TransactionModel

logger = logging.getLogger(__name__)


# ==========================================================
#  MAPEOS ORM -> ENTIDADES
# ==========================================================

def _to_account(row: AccountModel) -> Account:
    return Account(
        id=row.id,
        name=row.name or "",
        status=AccountStatus(row.status),
        gender=Gender(row.gender) if row.gender else None,
        created_at=row.created_at,
        reference_vectors=[list(v) for v in (row.reference_vectors or [])],
    )


def _to_transaction(row: TransactionModel) -> RecordedTransaction:
    return RecordedTransaction(
        id=row.id,
        account_id=row.account_id,
        recipient=row.recipient,
        amount=float(row.amount),
        category=TransactionCategory(row.category),
        submitted_at=row.submitted_at,
        risk_score=row.risk_score,
        risk_tier=RiskTier(row.risk_tier),
        rationale=list(row.rationale or []),
        status=TransactionStatus(row.status),
        latitude=row.latitude,
        longitude=row.longitude,
        place_name=row.place_name,
    )


def _to_incident(row: IncidentModel) -> Incident:
    return Incident(
        id=row.id,
        account_id=row.account_id,
        captured_sample=row.captured_sample or b"",
        created_at=row.created_at,
        status=IncidentStatus(row.status),
        transaction_id=row.transaction_id,
    )


class SqlLedger:
    """Ledger sobre SQLAlchemy async; abre una sesion por operacion."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_history(self, account_id: str) -> List[RecordedTransaction]:
        async with self.session_factory() as db:
            stmt = (
                select(TransactionModel)
                .where(TransactionModel.account_id == account_id)
                .order_by(TransactionModel.submitted_at)
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_transaction(r) for r in rows]

    async def get_velocity_totals(
        self,
        account_id: str,
        category: TransactionCategory,
        now: Optional[datetime] = None,
    ) -> VelocityTotals:
        # Se recalcula en cada consulta: refleja cualquier cambio de estado previo
        history = await self.get_history(account_id)
        return compute_velocity(account_id, category, history, now)

    async def persist_transaction(self, transaction: RecordedTransaction) -> None:
        async with self.session_factory() as db:
            db.add(
                TransactionModel(
                    id=transaction.id,
                    account_id=transaction.account_id,
                    recipient=transaction.recipient,
                    amount=transaction.amount,
                    category=TransactionCategory(transaction.category).value,
                    submitted_at=transaction.submitted_at,
                    latitude=transaction.latitude,
                    longitude=transaction.longitude,
                    place_name=transaction.place_name,
                    risk_score=transaction.risk_score,
                    risk_tier=RiskTier(transaction.risk_tier).value,
                    rationale=list(transaction.rationale),
                    status=TransactionStatus(transaction.status).value,
                )
            )
            await db.commit()
        logger.info(f"Transaccion {transaction.id} registrada ({transaction.status.value})")

    async def update_transaction_status(self, transaction_id: str, status: TransactionStatus) -> None:
        async with self.session_factory() as db:
            row = await db.get(TransactionModel, transaction_id)
            if row is None:
                raise LookupError(f"Transaction {transaction_id} not found")
            row.status = TransactionStatus(status).value
            await db.commit()

    async def create_incident(
        self,
        account_id: str,
        captured_sample: bytes,
        transaction_id: Optional[str] = None,
    ) -> Incident:
        async with self.session_factory() as db:
            row = IncidentModel(
                id=str(uuid.uuid4()),
                account_id=account_id,
                transaction_id=transaction_id,
                captured_sample=captured_sample or b"",
                created_at=datetime.utcnow(),
                status=IncidentStatus.PENDING_REVIEW.value,
            )
            db.add(row)
            await db.commit()
            return _to_incident(row)

    async def list_incidents(self, account_id: str) -> List[Incident]:
        async with self.session_factory() as db:
            stmt = (
                select(IncidentModel)
                .where(IncidentModel.account_id == account_id)
                .order_by(desc(IncidentModel.created_at))
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_incident(r) for r in rows]


class SqlIdentityStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self.session_factory() as db:
            row = await db.get(AccountModel, account_id)
            return _to_account(row) if row else None

    async def update_account_status(self, account_id: str, status: AccountStatus) -> None:
        async with self.session_factory() as db:
            row = await db.get(AccountModel, account_id)
            if row is None:
                raise LookupError(f"Account {account_id} not found")
            row.status = AccountStatus(status).value
            await db.commit()
        logger.info(f"Cuenta {account_id} -> {AccountStatus(status).value}")

    async def enroll_account(
        self,
        account_id: str,
        reference_vectors: Sequence[Sequence[float]],
        gender: Optional[Gender] = None,
        name: str = "",
        status: AccountStatus = AccountStatus.ACTIVE,
        created_at: Optional[datetime] = None,
    ) -> Account:
        async with self.session_factory() as db:
            row = AccountModel(
                id=account_id,
                name=name,
                gender=Gender(gender).value if gender else None,
                status=AccountStatus(status).value,
                reference_vectors=[[float(x) for x in v] for v in reference_vectors],
                created_at=created_at or datetime.utcnow(),
            )
            db.add(row)
            await db.commit()
            return _to_account(row)


class SqlNotifier:
    """Guarda la notificacion para la bandeja del titular y la deja en el log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def notify(
        self,
        account_id: str,
        message: str,
        *,
        type: NotificationType,
        transaction_id: Optional[str] = None,
        otp_code: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            db.add(
                NotificationModel(
                    account_id=account_id,
                    type=NotificationType(type).value,
                    message=message,
                    transaction_id=transaction_id,
                    otp_code=otp_code,
                    created_at=datetime.utcnow(),
                )
            )
            await db.commit()
        logger.info(f"🔔 Notificacion {NotificationType(type).value} para cuenta={account_id}")

    async def list_for_account(self, account_id: str, limit: int = 50) -> List[NotificationModel]:
        async with self.session_factory() as db:
            stmt = (
                select(NotificationModel)
                .where(NotificationModel.account_id == account_id)
                .order_by(desc(NotificationModel.created_at), desc(NotificationModel.id))
                .limit(limit)
            )
            return list((await db.execute(stmt)).scalars().all())
