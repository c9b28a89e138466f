import os

# Antes de importar app.*: SQLite en memoria y sin rate limiting
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import dataclasses
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from app.domain.entities.risk import (
    Account,
    AccountStatus,
    Gender,
    Incident,
    RecordedTransaction,
    RiskTier,
    TransactionCategory,
    TransactionStatus,
)
from app.domain.services.velocity_service import compute_velocity
from app.domain.services.verification_flow import VerificationOrchestrator
from app.infra.detectors.similarity import SimulatedSimilarityProvider

NOW = datetime(2026, 3, 10, 14, 0, 0)


def ramp_sample(size: int = 12_000, reverse: bool = False) -> bytes:
    """Captura RGB sintetica con gradiente (no degenerada)."""
    data = [40 + (i * 200) // size for i in range(size)]
    if reverse:
        data.reverse()
    return bytes(data)


def dark_sample(size: int = 12_000) -> bytes:
    return bytes(size)


def make_tx(
    account_id: str = "acc-1",
    recipient: str = "alice@upi",
    amount: float = 500.0,
    when: datetime = NOW,
    category: TransactionCategory = TransactionCategory.UPI,
    status: TransactionStatus = TransactionStatus.APPROVED,
    tier: RiskTier = RiskTier.LOW,
    place_name: Optional[str] = "Bengaluru, India",
) -> RecordedTransaction:
    return RecordedTransaction(
        id=str(uuid.uuid4()),
        account_id=account_id,
        recipient=recipient,
        amount=amount,
        category=category,
        submitted_at=when,
        risk_score=10,
        risk_tier=tier,
        rationale=["seed"],
        status=status,
        place_name=place_name,
    )


def established_history(account_id: str = "acc-1", days: int = 6) -> List[RecordedTransaction]:
    """Un pago diario de 500 a alice@upi a las 14:00 desde Bengaluru."""
    return [make_tx(account_id, when=NOW - timedelta(days=d)) for d in range(days, 0, -1)]


# ==========================================================
#  COLABORADORES EN MEMORIA
# ==========================================================

class FakeLedger:
    def __init__(self, history: Optional[List[RecordedTransaction]] = None):
        self.transactions: Dict[str, RecordedTransaction] = {t.id: t for t in history or []}
        self.incidents: List[Incident] = []
        self.fail_on: set = set()
        # Operaciones que fallan solo en su proxima llamada
        self.fail_once: set = set()

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise RuntimeError(f"ledger {op} down")
        if op in self.fail_once:
            self.fail_once.discard(op)
            raise RuntimeError(f"ledger {op} down")

    def _history(self, account_id: str) -> List[RecordedTransaction]:
        txs = [t for t in self.transactions.values() if t.account_id == account_id]
        return sorted(txs, key=lambda t: t.submitted_at)

    async def get_history(self, account_id):
        self._check("get_history")
        return [dataclasses.replace(t) for t in self._history(account_id)]

    async def get_velocity_totals(self, account_id, category, now=None):
        self._check("get_velocity_totals")
        return compute_velocity(account_id, category, self._history(account_id), now)

    async def persist_transaction(self, transaction):
        self._check("persist_transaction")
        self.transactions[transaction.id] = dataclasses.replace(transaction)

    async def update_transaction_status(self, transaction_id, status):
        self._check("update_transaction_status")
        self.transactions[transaction_id].status = status

    async def create_incident(self, account_id, captured_sample, transaction_id=None):
        self._check("create_incident")
        incident = Incident(
            id=str(uuid.uuid4()),
            account_id=account_id,
            captured_sample=captured_sample,
            created_at=NOW,
            transaction_id=transaction_id,
        )
        self.incidents.append(incident)
        return incident


class FakeIdentityStore:
    def __init__(self, *accounts: Account):
        self.accounts: Dict[str, Account] = {a.id: a for a in accounts}
        self.status_updates: List[tuple] = []

    async def get_account(self, account_id):
        account = self.accounts.get(account_id)
        return dataclasses.replace(account) if account else None

    async def update_account_status(self, account_id, status):
        self.status_updates.append((account_id, status))
        self.accounts[account_id].status = status


class FakeNotifier:
    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def notify(self, account_id, message, *, type, transaction_id=None, otp_code=None):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append(
            {
                "account_id": account_id,
                "message": message,
                "type": type,
                "transaction_id": transaction_id,
                "otp_code": otp_code,
            }
        )

    def of_type(self, type) -> List[dict]:
        return [n for n in self.sent if n["type"] == type]


# ==========================================================
#  FIXTURES
# ==========================================================

@pytest.fixture
def provider():
    return SimulatedSimilarityProvider()


@pytest.fixture
def account(provider):
    return Account(
        id="acc-1",
        status=AccountStatus.ACTIVE,
        gender=Gender.MALE,
        created_at=NOW - timedelta(days=30),
        reference_vectors=[provider.embed(ramp_sample()).tolist()],
        name="Ravi",
    )


@pytest.fixture
def ledger():
    return FakeLedger(established_history())


@pytest.fixture
def identity(account):
    return FakeIdentityStore(account)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def orchestrator(ledger, identity, notifier, provider):
    return VerificationOrchestrator(
        ledger,
        identity,
        notifier,
        provider=provider,
        otp_factory=lambda: "123456",
        clock=lambda: NOW,
    )
