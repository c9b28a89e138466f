# app/infra/cache/risk_factor_cache.py
from datetime import datetime
from typing import Dict, Optional, Set

# Puntos por factor (se suman y luego se acotan a [0, 100])
DEFAULT_WEIGHTS: Dict[str, float] = {
    "AMOUNT_UPPER_BAND": 60,
    "AMOUNT_MIDDLE_BAND": 35,
    "VELOCITY_NEAR_CAP": 20,
    "REPEAT_RECIPIENT_SAME_DAY": 40,
    "AMOUNT_OUTLIER": 65,
    "NEW_RECIPIENT": 25,
    "OFF_HOURS": 30,
    "LATE_NIGHT": 45,
    "LOCATION_DENIED": 50,
    "LOCATION_UNAVAILABLE": 20,
    "LOCATION_UNUSUAL_CITY": 60,
    "ACCOUNT_UNDER_REVIEW": 15,
}

# Factores que se reportan como criticos en el rationale
DEFAULT_CRITICAL: Set[str] = {"LOCATION_DENIED"}


class RiskConfig:
    def __init__(self):
        self.weights: Dict[str, float] = dict(DEFAULT_WEIGHTS)
        self.critical: Set[str] = set(DEFAULT_CRITICAL)
        self.source = "defaults"
        self.loaded_at: Optional[datetime] = None

    def weight(self, code: str) -> int:
        return int(round(self.weights.get(code, 0.0)))

    def reset(self) -> None:
        self.weights = dict(DEFAULT_WEIGHTS)
        self.critical = set(DEFAULT_CRITICAL)
        self.source = "defaults"
        self.loaded_at = None


risk_config = RiskConfig()
