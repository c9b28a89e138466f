# app/domain/services/verification_policy.py
from dataclasses import dataclass
from enum import Enum

from app.core.config import settings
from app.domain.entities.risk import RiskTier


class VerificationPath(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    OTP = "OTP"
    BIOMETRIC = "BIOMETRIC"


@dataclass(frozen=True)
class VerificationRequirement:
    pre_confirm_required: bool
    path: VerificationPath


_PATHS = {
    RiskTier.LOW: VerificationPath.AUTO_APPROVE,
    RiskTier.MEDIUM: VerificationPath.OTP,
    RiskTier.HIGH: VerificationPath.BIOMETRIC,
    RiskTier.CRITICAL: VerificationPath.BIOMETRIC,
}


def requires_pre_confirmation(amount: float) -> bool:
    """Montos altos pasan por confirmacion explicita antes del scoring."""
    return amount >= settings.HIGH_VALUE_THRESHOLD


def required_verification(tier: RiskTier, amount: float) -> VerificationRequirement:
    return VerificationRequirement(
        pre_confirm_required=requires_pre_confirmation(amount),
        path=_PATHS[RiskTier(tier)],
    )
