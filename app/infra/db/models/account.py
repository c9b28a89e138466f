# app/infra/db/models/account.py
from sqlalchemy import JSON, Column, DateTime, String, func
from sqlalchemy.orm import relationship

from app.infra.db.base import Base


class AccountModel(Base):
    __tablename__ = "accounts"

    id = Column(String(64), primary_key=True)
    name = Column(String(120), nullable=False, default="")
    gender = Column(String(10), nullable=True)
    status = Column(String(20), nullable=False, default="ACTIVE", index=True)
    # Vectores de referencia enrolados (lista de listas de floats)
    reference_vectors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    transactions = relationship("TransactionModel", back_populates="account")
