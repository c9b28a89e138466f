# app/schemas/account_schemas.py
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.domain.entities.risk import Gender


class EnrollmentRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=64, examples=["acc-001"])
    name: str = Field("", max_length=120)
    gender: Optional[Gender] = None
    reference_samples_b64: List[str] = Field(
        ..., min_length=1, description="Capturas de referencia (RGB crudo, base64)"
    )


class AccountResponse(BaseModel):
    id: str
    name: str
    status: str
    gender: Optional[str] = None
    created_at: datetime
    reference_count: int


class ProfileOut(BaseModel):
    transaction_count: int
    mean_amount: float
    stddev_amount: float
    frequent_recipients: List[str]
    typical_hours: List[int]


class HeadroomOut(BaseModel):
    daily_total: float
    weekly_total: float
    daily_remaining: Optional[float] = None
    weekly_remaining: Optional[float] = None


class LocationOut(BaseModel):
    city: str
    count: int


class AccountInsight(BaseModel):
    account_id: str
    status: str
    profile: ProfileOut
    velocity: Dict[str, HeadroomOut]
    typical_locations: List[LocationOut]
    stability_score: int


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    message: str
    transaction_id: Optional[str] = None
    read: bool = False
    created_at: datetime


class IncidentOut(BaseModel):
    """La captura queda solo para revisores; aqui se expone su tamano."""

    id: str
    transaction_id: Optional[str] = None
    status: str
    created_at: datetime
    sample_size: int
