# app/infra/db/models/transaction.py
from sqlalchemy import DECIMAL, JSON, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from app.infra.db.base import Base


class TransactionModel(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)

    recipient = Column(String(120), nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    category = Column(String(10), nullable=False)
    submitted_at = Column(DateTime, nullable=False, index=True)

    # --- Ubicacion
    latitude = Column(Float)
    longitude = Column(Float)
    place_name = Column(String(120))

    # --- Resultado del analisis (inmutable tras el scoring)
    risk_score = Column(Integer, nullable=False)
    risk_tier = Column(String(10), nullable=False, index=True)
    rationale = Column(JSON, nullable=False, default=list)

    # --- Unico campo mutable del flujo
    status = Column(String(20), nullable=False, index=True)

    account = relationship("AccountModel", back_populates="transactions")
