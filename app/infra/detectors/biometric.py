# app/infra/detectors/biometric.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Union

import numpy as np

from app.core.config import settings
from app.domain.entities.risk import Account, Gender, RecordedTransaction, RiskTier, VerificationResult
from app.infra.detectors.similarity import SimilarityProvider

logger = logging.getLogger(__name__)

ReferenceSample = Union[bytes, Sequence[float]]


def is_degenerate_capture(sample: bytes) -> bool:
    """
    Detecta capturas en negro / camara tapada. La captura se interpreta como
    pixeles RGB crudos; se muestrea 1 de cada CAPTURE_SAMPLE_RATE pixeles.
    """
    data = np.frombuffer(sample or b"", dtype=np.uint8)
    n_pixels = data.size // 3
    if n_pixels == 0:
        return True

    pixels = data[: n_pixels * 3].reshape(n_pixels, 3)
    muestra = pixels[:: settings.CAPTURE_SAMPLE_RATE]
    oscuros = np.all(muestra < settings.CAPTURE_DARK_CHANNEL_MAX, axis=1)
    return float(oscuros.mean()) > settings.CAPTURE_DARK_RATIO


def select_threshold(
    tier: Optional[RiskTier],
    account_created_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> tuple[float, List[str]]:
    """
    Umbral de similitud requerido. Devuelve (umbral, ajustes aplicados).
      - base, o el umbral del tier de la transaccion si es mayor
      - + incremento fijo para cuentas con menos de N dias
      - acotado a BIOMETRIC_MAX_THRESHOLD
    """
    base = settings.BIOMETRIC_BASE_THRESHOLD
    umbral = base
    ajustes: List[str] = []

    if tier is not None:
        por_tier = settings.BIOMETRIC_TIER_THRESHOLDS.get(RiskTier(tier).value)
        if por_tier is not None and por_tier > umbral:
            ajustes.append(f"{RiskTier(tier).value} risk tier (+{por_tier - base:.3f})")
            umbral = por_tier

    if account_created_at is not None:
        ahora = now or datetime.utcnow()
        if ahora - account_created_at < timedelta(days=settings.BIOMETRIC_NEW_ACCOUNT_DAYS):
            inc = settings.BIOMETRIC_NEW_ACCOUNT_INCREMENT
            ajustes.append(f"account younger than {settings.BIOMETRIC_NEW_ACCOUNT_DAYS} days (+{inc:.3f})")
            umbral += inc

    if umbral > settings.BIOMETRIC_MAX_THRESHOLD:
        umbral = settings.BIOMETRIC_MAX_THRESHOLD
        ajustes.append(f"capped at {umbral:.3f}")

    return umbral, ajustes


def _attribute_mismatch(declared: Optional[Gender], detected: Optional[Gender]) -> bool:
    neutros = (None, Gender.OTHER)
    if declared in neutros or detected in neutros:
        return False
    return Gender(declared) != Gender(detected)


def _to_vector(provider: SimilarityProvider, sample: ReferenceSample) -> np.ndarray:
    if isinstance(sample, (bytes, bytearray, memoryview)):
        return np.asarray(provider.embed(bytes(sample)), dtype=float)
    return np.asarray(sample, dtype=float)


def verify_biometric(
    live_sample: bytes,
    reference_samples: Sequence[ReferenceSample],
    account: Account,
    transaction: Optional[RecordedTransaction] = None,
    *,
    provider: SimilarityProvider,
    now: Optional[datetime] = None,
) -> VerificationResult:
    """
    Compara una captura en vivo contra las muestras enroladas:
      1. captura degenerada (negro/tapada) -> falla inmediata
      2. sin muestras de referencia -> falla inmediata
      3. atributo declarado distinto al detectado -> falla (precede al score)
      4. umbral segun tier de la transaccion y antiguedad de la cuenta
      5. similitud coseno maxima contra todas las referencias
    """
    if is_degenerate_capture(live_sample):
        reason = "Verification failed: the camera feed was obscured or unavailable."
        logger.warning(f"Biometria cuenta={account.id}: captura degenerada")
        return VerificationResult(match=False, reason=reason)

    if not reference_samples:
        reason = "Verification failed: no enrollment data is available for this account."
        logger.warning(f"Biometria cuenta={account.id}: sin referencias enroladas")
        return VerificationResult(match=False, reason=reason)

    detectado = provider.classify_attribute(live_sample)
    if _attribute_mismatch(account.gender, detectado):
        reason = (
            "Verification failed: the live capture does not match the account's declared "
            f"attribute ({Gender(account.gender).value} expected, {Gender(detectado).value} detected)."
        )
        logger.warning(f"Biometria cuenta={account.id}: atributo no coincide")
        return VerificationResult(match=False, reason=reason)

    tier = transaction.risk_tier if transaction is not None else None
    umbral, ajustes = select_threshold(tier, account.created_at, now)

    live_vec = _to_vector(provider, live_sample)
    similitudes = [provider.similarity(live_vec, _to_vector(provider, ref)) for ref in reference_samples]
    best = max(similitudes)
    match = best >= umbral

    detalle = ", ".join(ajustes) if ajustes else "none"
    reason = (
        f"{'Match' if match else 'No match'}: best similarity {best:.3f} "
        f"{'>=' if match else '<'} threshold {umbral:.3f} across {len(similitudes)} "
        f"reference sample(s); adjustments: {detalle}."
    )
    logger.info(f"Biometria cuenta={account.id}: {reason}")

    return VerificationResult(
        match=match,
        reason=reason,
        best_similarity=best,
        threshold=umbral,
        similarities=similitudes,
    )
