# app/domain/services/collaborators.py
from datetime import datetime
from typing import List, Optional, Protocol

from app.domain.entities.risk import (
    Account,
    AccountStatus,
    Incident,
    NotificationType,
    RecordedTransaction,
    TransactionCategory,
    TransactionStatus,
    VelocityTotals,
)


class Ledger(Protocol):
    async def get_history(self, account_id: str) -> List[RecordedTransaction]: ...

    async def get_velocity_totals(
        self,
        account_id: str,
        category: TransactionCategory,
        now: Optional[datetime] = None,
    ) -> VelocityTotals: ...

    async def persist_transaction(self, transaction: RecordedTransaction) -> None: ...

    async def update_transaction_status(self, transaction_id: str, status: TransactionStatus) -> None: ...

    async def create_incident(
        self,
        account_id: str,
        captured_sample: bytes,
        transaction_id: Optional[str] = None,
    ) -> Incident: ...


class IdentityStore(Protocol):
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    async def update_account_status(self, account_id: str, status: AccountStatus) -> None: ...


class Notifier(Protocol):
    async def notify(
        self,
        account_id: str,
        message: str,
        *,
        type: NotificationType,
        transaction_id: Optional[str] = None,
        otp_code: Optional[str] = None,
    ) -> None: ...
