# app/schemas/transaction_schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.domain.entities.risk import LocationStatus, TransactionCategory


# ==========================================================
#   ENTRADA
# ==========================================================

class TransactionSubmission(BaseModel):
    """
    Transaccion propuesta por el titular. Las validaciones de negocio
    (monto > 0, destinatario no vacio, cuenta activa, cupos) las hace el
    flujo de verificacion; aqui solo se valida la forma.
    """

    account_id: str = Field(..., max_length=64, examples=["acc-001"])
    recipient: str = Field(..., max_length=120, examples=["merchant@upi"])
    amount: float = Field(..., description="Monto en INR", examples=[2500.0])
    category: TransactionCategory = Field(..., examples=["UPI"])
    submitted_at: Optional[datetime] = Field(
        None, description="Momento del envio (UTC); por defecto ahora"
    )

    location_status: Optional[LocationStatus] = Field(None, examples=["SUCCESS"])
    place_name: Optional[str] = Field(None, max_length=120, examples=["Bengaluru, India"])
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    high_value_confirmed: bool = Field(
        False, description="El titular ya confirmo un monto alto antes del envio"
    )


class DenyRequest(BaseModel):
    block_account: bool = Field(
        True, description="True: bloquear cuenta; False: solo marcar la transaccion"
    )


class OtpSubmission(BaseModel):
    code: str = Field(..., min_length=1, max_length=12, examples=["123456"])


class BiometricSubmission(BaseModel):
    """Captura en vivo (RGB crudo) codificada en base64."""

    sample_b64: str = Field(..., min_length=1)


class BiometricResultSubmission(BaseModel):
    """Resultado de un verificador externo (camino alternativo)."""

    match: bool
    reason: str = ""
    sample_b64: Optional[str] = None


# ==========================================================
#   SALIDA
# ==========================================================

class WorkflowResponse(BaseModel):
    transaction_id: str
    state: str
    risk_score: Optional[int] = None
    risk_tier: Optional[str] = None
    rationale: List[str] = []
    verification_path: Optional[str] = None
    transaction_status: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
