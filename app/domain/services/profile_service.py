# app/domain/services/profile_service.py
from typing import List, Sequence

import pandas as pd

from app.core.config import settings
from app.domain.entities.risk import (
    BLOCKED_STATUSES,
    BehavioralProfile,
    RecordedTransaction,
    RiskTier,
    TypicalLocation,
)


def default_profile(transaction_count: int = 0) -> BehavioralProfile:
    """Perfil generico para cuentas con historial insuficiente."""
    return BehavioralProfile(
        transaction_count=transaction_count,
        mean_amount=settings.PROFILE_DEFAULT_MEAN,
        stddev_amount=settings.PROFILE_DEFAULT_STDDEV,
        frequent_recipients=(),
        typical_hours=tuple(settings.PROFILE_DEFAULT_HOURS),
    )


def _history_frame(history: Sequence[RecordedTransaction]) -> pd.DataFrame:
    df = pd.DataFrame(
        {
            "amount": [float(t.amount) for t in history],
            "recipient": [t.recipient for t in history],
            "submitted_at": pd.to_datetime([t.submitted_at for t in history]),
        }
    )
    return df.sort_values("submitted_at", kind="stable").reset_index(drop=True)


def build_profile(history: Sequence[RecordedTransaction]) -> BehavioralProfile:
    """
    Construye el perfil de comportamiento de una cuenta:
      - media y desviacion estandar poblacional del monto
      - top-N destinatarios por frecuencia
      - ventana horaria tipica (hora pico +/- N, acotada a [0, 23])

    Con menos de PROFILE_MIN_HISTORY transacciones devuelve el perfil por defecto.
    """
    count = len(history)
    if count < settings.PROFILE_MIN_HISTORY:
        return default_profile(count)

    df = _history_frame(history)

    mean_amount = float(df["amount"].mean())
    stddev_amount = float(df["amount"].std(ddof=0))

    # value_counts ordena por frecuencia; desempate por primera aparicion
    recipient_counts = df["recipient"].value_counts(sort=False)
    first_seen = {r: i for i, r in reversed(list(enumerate(df["recipient"])))}
    ranked = sorted(recipient_counts.items(), key=lambda kv: (-kv[1], first_seen[kv[0]]))
    frequent = tuple(r for r, _ in ranked[: settings.PROFILE_TOP_RECIPIENTS])

    hour_counts = df["submitted_at"].dt.hour.value_counts()
    peak_count = hour_counts.max()
    peak_hour = int(min(h for h, c in hour_counts.items() if c == peak_count))
    spread = settings.PROFILE_HOUR_SPREAD

    return BehavioralProfile(
        transaction_count=count,
        mean_amount=mean_amount,
        stddev_amount=stddev_amount,
        frequent_recipients=frequent,
        typical_hours=(max(0, peak_hour - spread), min(23, peak_hour + spread)),
    )


def typical_locations(
    history: Sequence[RecordedTransaction],
    limit: int | None = None,
) -> List[TypicalLocation]:
    """Top ciudades (por frecuencia) desde las que opera la cuenta."""
    limit = limit or settings.TYPICAL_LOCATIONS_LIMIT
    cities = [t.city for t in history if t.city]
    if not cities:
        return []

    counts = pd.Series(cities).value_counts(sort=False)
    first_seen = {c: i for i, c in reversed(list(enumerate(cities)))}
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], first_seen[kv[0]]))
    return [TypicalLocation(city=c, count=int(n)) for c, n in ranked[:limit]]


def account_stability(history: Sequence[RecordedTransaction]) -> int:
    """
    Puntaje de estabilidad 0-100:
      100 - 5 * (tx HIGH/CRITICAL) - 10 * (tx bloqueadas); 50 si hay poco historial.
    """
    if len(history) < settings.PROFILE_MIN_HISTORY:
        return 50

    high_risk = sum(1 for t in history if t.risk_tier in (RiskTier.HIGH, RiskTier.CRITICAL))
    blocked = sum(1 for t in history if t.status in BLOCKED_STATUSES)
    return max(0, 100 - high_risk * 5 - blocked * 10)
