# app/infra/db/models/risk_factors.py
from sqlalchemy import Boolean, Column, Float, Integer, String

from app.infra.db.base import Base


class RiskFactor(Base):
    __tablename__ = "risk_factors"

    id = Column(Integer, primary_key=True)
    code = Column(String(80), unique=True, nullable=False)
    description = Column(String(255), nullable=False, default="")
    weight = Column(Float, nullable=False)
    severity = Column(String(20), nullable=False, default="NORMAL")
    enabled = Column(Boolean, default=True)
