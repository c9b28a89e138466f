# app/domain/entities/risk.py
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

from app.core.config import settings


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    UNDER_REVIEW = "UNDER_REVIEW"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class TransactionCategory(str, Enum):
    UPI = "UPI"
    IMPS = "IMPS"
    NEFT = "NEFT"
    RTGS = "RTGS"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    BLOCKED_BY_AI = "BLOCKED_BY_AI"
    BLOCKED_BY_USER = "BLOCKED_BY_USER"
    FLAGGED_BY_USER = "FLAGGED_BY_USER"
    CANCELLED = "CANCELLED"


# Estados que no cuentan para velocidad ni estabilidad positiva
BLOCKED_STATUSES = frozenset({TransactionStatus.BLOCKED_BY_AI, TransactionStatus.BLOCKED_BY_USER})


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class LocationStatus(str, Enum):
    SUCCESS = "SUCCESS"
    DENIED = "DENIED"
    UNAVAILABLE = "UNAVAILABLE"
    PENDING = "PENDING"


class IncidentStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class NotificationType(str, Enum):
    HIGH_RISK_TRANSACTION = "HIGH_RISK_TRANSACTION"
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    TRANSACTION_OTP = "TRANSACTION_OTP"


@dataclass
class Account:
    id: str
    status: AccountStatus
    gender: Optional[Gender]
    created_at: datetime
    reference_vectors: List[List[float]] = field(default_factory=list)
    name: str = ""


@dataclass
class ProposedTransaction:
    account_id: str
    recipient: str
    amount: float
    category: TransactionCategory
    submitted_at: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_name: Optional[str] = None

    @property
    def city(self) -> Optional[str]:
        return city_from_place(self.place_name)


@dataclass
class RecordedTransaction:
    """Transaccion ya puntuada; solo `status` cambia despues del scoring."""

    id: str
    account_id: str
    recipient: str
    amount: float
    category: TransactionCategory
    submitted_at: datetime
    risk_score: int
    risk_tier: RiskTier
    rationale: List[str]
    status: TransactionStatus
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_name: Optional[str] = None

    @property
    def city(self) -> Optional[str]:
        return city_from_place(self.place_name)


@dataclass(frozen=True)
class BehavioralProfile:
    transaction_count: int
    mean_amount: float
    stddev_amount: float
    frequent_recipients: Sequence[str]
    typical_hours: tuple[int, int]

    @property
    def has_history(self) -> bool:
        return self.transaction_count >= settings.PROFILE_MIN_HISTORY


@dataclass(frozen=True)
class VelocityTotals:
    daily_total: float = 0.0
    weekly_total: float = 0.0
    daily_limit: Optional[float] = None
    weekly_limit: Optional[float] = None

    @property
    def controlled(self) -> bool:
        return self.daily_limit is not None or self.weekly_limit is not None


@dataclass(frozen=True)
class TypicalLocation:
    city: str
    count: int


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    tier: RiskTier
    rationale: List[str]
    factors: List[str]


@dataclass(frozen=True)
class VerificationResult:
    """Intento biometrico efimero; no se persiste."""

    match: bool
    reason: str
    best_similarity: Optional[float] = None
    threshold: Optional[float] = None
    similarities: List[float] = field(default_factory=list)


@dataclass
class Incident:
    id: str
    account_id: str
    captured_sample: bytes
    created_at: datetime
    status: IncidentStatus = IncidentStatus.PENDING_REVIEW
    transaction_id: Optional[str] = None


def city_from_place(place_name: Optional[str]) -> Optional[str]:
    """'Bengaluru, India' -> 'Bengaluru'."""
    if not place_name:
        return None
    city = place_name.split(",")[0].strip()
    return city or None
