# app/domain/services/velocity_service.py
import logging
from datetime import datetime, timedelta
from typing import Sequence

from app.core.config import settings
from app.core.exceptions import PolicyViolation
from app.domain.entities.risk import (
    BLOCKED_STATUSES,
    RecordedTransaction,
    TransactionCategory,
    TransactionStatus,
    VelocityTotals,
)

logger = logging.getLogger(__name__)

# Estados que no consumen cupo
_EXCLUDED = BLOCKED_STATUSES | {TransactionStatus.CANCELLED}


def limits_for(category: TransactionCategory) -> tuple[float | None, float | None]:
    key = TransactionCategory(category).value
    return settings.DAILY_LIMITS.get(key), settings.WEEKLY_LIMITS.get(key)


def compute_velocity(
    account_id: str,
    category: TransactionCategory,
    history: Sequence[RecordedTransaction],
    now: datetime | None = None,
) -> VelocityTotals:
    """
    Suma de montos de la categoria en el dia calendario actual y en los
    7 dias previos al inicio de hoy. Categorias sin limite reportan cero.
    """
    daily_limit, weekly_limit = limits_for(category)
    if daily_limit is None and weekly_limit is None:
        return VelocityTotals()

    ahora = now or datetime.utcnow()
    hoy = ahora.replace(hour=0, minute=0, second=0, microsecond=0)
    hace_7d = hoy - timedelta(days=7)

    txs = [
        t for t in history
        if t.account_id == account_id
        and t.category == category
        and t.status not in _EXCLUDED
    ]

    daily = sum(float(t.amount) for t in txs if hoy <= t.submitted_at <= ahora)
    weekly = sum(float(t.amount) for t in txs if hace_7d <= t.submitted_at <= ahora)

    return VelocityTotals(
        daily_total=daily,
        weekly_total=weekly,
        daily_limit=daily_limit,
        weekly_limit=weekly_limit,
    )


def remaining_headroom(totals: VelocityTotals) -> dict:
    """Cupo restante (None = sin limite)."""
    return {
        "daily": None if totals.daily_limit is None else max(0.0, totals.daily_limit - totals.daily_total),
        "weekly": None if totals.weekly_limit is None else max(0.0, totals.weekly_limit - totals.weekly_total),
    }


def check_velocity_limits(
    category: TransactionCategory,
    amount: float,
    totals: VelocityTotals,
) -> None:
    """Lanza PolicyViolation si el monto haria superar el cupo diario o semanal."""
    if not totals.controlled:
        return

    cat = TransactionCategory(category).value
    if totals.daily_limit is not None and totals.daily_total + amount > totals.daily_limit:
        restante = max(0.0, totals.daily_limit - totals.daily_total)
        logger.info(f"Velocity cap diario excedido ({cat}): {totals.daily_total} + {amount}")
        raise PolicyViolation(
            f"Daily {cat} limit of {totals.daily_limit:,.0f} would be exceeded; "
            f"remaining today: {restante:,.0f}.",
            details={"window": "daily", "category": cat, "remaining": restante},
        )
    if totals.weekly_limit is not None and totals.weekly_total + amount > totals.weekly_limit:
        restante = max(0.0, totals.weekly_limit - totals.weekly_total)
        logger.info(f"Velocity cap semanal excedido ({cat}): {totals.weekly_total} + {amount}")
        raise PolicyViolation(
            f"Weekly {cat} limit of {totals.weekly_limit:,.0f} would be exceeded; "
            f"remaining this week: {restante:,.0f}.",
            details={"window": "weekly", "category": cat, "remaining": restante},
        )
