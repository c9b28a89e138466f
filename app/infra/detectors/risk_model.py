# app/infra/detectors/risk_model.py

import logging
from typing import List, Optional, Sequence

from app.core.config import settings
from app.core.exceptions import ValidationError
from app.domain.entities.risk import (
    Account,
    AccountStatus,
    BehavioralProfile,
    LocationStatus,
    ProposedTransaction,
    RecordedTransaction,
    RiskAssessment,
    RiskTier,
    TransactionCategory,
    TypicalLocation,
    VelocityTotals,
)
from app.domain.services.profile_service import build_profile
from app.infra.cache.risk_factor_cache import RiskConfig, risk_config

logger = logging.getLogger(__name__)


# ==========================================================
#  TIERS
# ==========================================================

def tier_for_score(score: int) -> RiskTier:
    """Esquema de cuatro niveles: <=40 LOW, <=70 MEDIUM, <=90 HIGH, resto CRITICAL."""
    if score <= settings.TIER_LOW_MAX:
        return RiskTier.LOW
    if score <= settings.TIER_MEDIUM_MAX:
        return RiskTier.MEDIUM
    if score <= settings.TIER_HIGH_MAX:
        return RiskTier.HIGH
    return RiskTier.CRITICAL


class _Evaluacion:
    """Acumula factores disparados y lineas de rationale en orden."""

    def __init__(self, config: RiskConfig):
        self.config = config
        self.factores: List[str] = []
        self.lineas: List[str] = []

    def factor(self, code: str, mensaje: str) -> None:
        puntos = self.config.weight(code)
        self.factores.append(code)
        prefijo = "CRITICAL: " if code in self.config.critical else ""
        self.lineas.append(f"{prefijo}{mensaje} (+{puntos})")

    def nota(self, mensaje: str) -> None:
        self.lineas.append(mensaje)

    @property
    def total(self) -> int:
        return sum(self.config.weight(f) for f in self.factores)


# ==========================================================
#  SEÑALES
# ==========================================================

def _senal_bandas_monto(ev: _Evaluacion, tx: ProposedTransaction) -> None:
    cat = TransactionCategory(tx.category).value
    bandas = settings.AMOUNT_BANDS.get(cat)
    if not bandas:
        return
    upper, middle = bandas
    if tx.amount >= upper:
        ev.factor("AMOUNT_UPPER_BAND", f"Amount {tx.amount:,.2f} is in the upper band for {cat} transfers.")
    elif tx.amount >= middle:
        ev.factor("AMOUNT_MIDDLE_BAND", f"Amount {tx.amount:,.2f} is in the middle band for {cat} transfers.")


def _senal_velocidad(ev: _Evaluacion, tx: ProposedTransaction, velocity: Optional[VelocityTotals]) -> None:
    if velocity is None or not velocity.controlled:
        return
    ratio = settings.VELOCITY_NEAR_CAP_RATIO
    cat = TransactionCategory(tx.category).value
    for ventana, total, limite in (
        ("daily", velocity.daily_total, velocity.daily_limit),
        ("weekly", velocity.weekly_total, velocity.weekly_limit),
    ):
        if limite and total + tx.amount >= ratio * limite:
            ev.factor(
                "VELOCITY_NEAR_CAP",
                f"This payment brings {ventana} {cat} spending to "
                f"{(total + tx.amount) / limite:.0%} of the {limite:,.0f} limit.",
            )
            return


def _senal_destinatario_repetido(
    ev: _Evaluacion,
    tx: ProposedTransaction,
    history: Sequence[RecordedTransaction],
) -> None:
    dia = tx.submitted_at.date()
    previas = sum(
        1 for t in history
        if t.recipient == tx.recipient
        and t.submitted_at.date() == dia
        and t.submitted_at <= tx.submitted_at
    )
    if previas >= settings.REPEAT_RECIPIENT_MIN_PRIOR:
        ev.factor(
            "REPEAT_RECIPIENT_SAME_DAY",
            f"{previas} payments to '{tx.recipient}' were already made today.",
        )


def _senal_comportamiento(
    ev: _Evaluacion,
    tx: ProposedTransaction,
    profile: BehavioralProfile,
    history: Sequence[RecordedTransaction],
) -> None:
    hora = tx.submitted_at.hour

    if profile.has_history:
        limite = profile.mean_amount + settings.OUTLIER_STDDEV_FACTOR * profile.stddev_amount
        if profile.stddev_amount > 0 and tx.amount > limite:
            ev.factor(
                "AMOUNT_OUTLIER",
                f"Amount {tx.amount:,.2f} is far above the usual {profile.mean_amount:,.2f} "
                f"(threshold {limite:,.2f}).",
            )
        if tx.recipient not in profile.frequent_recipients:
            ev.factor("NEW_RECIPIENT", f"'{tx.recipient}' is not among the account's frequent recipients.")
        inicio, fin = profile.typical_hours
        if not inicio <= hora <= fin:
            ev.factor(
                "OFF_HOURS",
                f"Submitted at {hora:02d}:00, outside the typical {inicio:02d}:00-{fin:02d}:00 window.",
            )
        return

    # Historial insuficiente: modelo simple para cuentas nuevas
    desde, hasta = settings.LATE_NIGHT_HOURS
    if desde <= hora < hasta:
        ev.factor("LATE_NIGHT", f"Late-night transaction at {hora:02d}:00 on an account with little history.")
    if all(t.recipient != tx.recipient for t in history):
        ev.nota(f"First payment to new recipient '{tx.recipient}' (not scored: limited history).")


def _senal_ubicacion(
    ev: _Evaluacion,
    tx: ProposedTransaction,
    location_status: Optional[LocationStatus],
    typical: Sequence[TypicalLocation],
) -> None:
    status = LocationStatus(location_status) if location_status else LocationStatus.UNAVAILABLE
    if status == LocationStatus.PENDING:
        status = LocationStatus.UNAVAILABLE

    if status == LocationStatus.DENIED:
        ev.factor("LOCATION_DENIED", "Location access was denied for this transaction.")
        return
    if status == LocationStatus.UNAVAILABLE:
        ev.factor("LOCATION_UNAVAILABLE", "Location could not be determined.")
        return

    ciudad = tx.city
    if ciudad is None:
        ev.nota("Location captured but could not be resolved to a place.")
        return
    conocidas = [loc.city for loc in typical]
    if not conocidas:
        ev.nota(f"Transaction from {ciudad}; no location history to compare against.")
        return
    if ciudad.casefold() in {c.casefold() for c in conocidas}:
        ev.nota(f"Location {ciudad} matches the account's typical locations.")
    else:
        ev.factor(
            "LOCATION_UNUSUAL_CITY",
            f"Transaction from {ciudad}, outside the typical locations ({', '.join(conocidas)}).",
        )


def _senal_estado_cuenta(ev: _Evaluacion, account: Account) -> None:
    if account.status == AccountStatus.UNDER_REVIEW:
        ev.factor("ACCOUNT_UNDER_REVIEW", "Account is currently under review.")


# ==========================================================
#  FUNCION PRINCIPAL DE SCORING
# ==========================================================

def score_transaction(
    transaction: ProposedTransaction,
    account: Account,
    history: Sequence[RecordedTransaction],
    velocity: Optional[VelocityTotals],
    location_status: Optional[LocationStatus],
    typical_locations: Sequence[TypicalLocation],
    *,
    profile: Optional[BehavioralProfile] = None,
    config: RiskConfig = risk_config,
) -> RiskAssessment:
    """
    Puntua una transaccion sumando señales independientes:
      - bandas de monto por categoria y cercania al cupo
      - destinatario repetido en el dia
      - anomalias de comportamiento (o chequeo nocturno si hay poco historial)
      - ubicacion
      - estado de la cuenta

    El total se acota a [0, 100] y se traduce a un nivel (tier).
    Es una funcion pura: no escribe en ningun colaborador.
    """
    if transaction.amount is None or transaction.amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    if not (transaction.recipient or "").strip():
        raise ValidationError("Recipient must not be empty.")

    profile = profile or build_profile(history)
    ev = _Evaluacion(config)

    _senal_bandas_monto(ev, transaction)
    _senal_velocidad(ev, transaction, velocity)
    _senal_destinatario_repetido(ev, transaction, history)
    _senal_comportamiento(ev, transaction, profile, history)
    _senal_ubicacion(ev, transaction, location_status, typical_locations)
    _senal_estado_cuenta(ev, account)

    score = max(0, min(100, ev.total))
    tier = tier_for_score(score)

    rationale = list(ev.lineas)
    if tier == RiskTier.LOW:
        if ev.factores:
            rationale.insert(0, "Overall risk is low; the signals below were noted but do not require verification.")
        else:
            rationale.insert(0, "Transaction is consistent with the account's established behavior.")
    rationale.append(f"Final risk score {score}/100 ({tier.value}).")

    logger.info(
        f"Scoring cuenta={transaction.account_id} monto={transaction.amount} "
        f"score={score} tier={tier.value} factores={ev.factores}"
    )
    return RiskAssessment(score=score, tier=tier, rationale=rationale, factors=list(ev.factores))
