# app/infra/db/models/incident.py
from sqlalchemy import Column, DateTime, ForeignKey, LargeBinary, String, func

from app.infra.db.base import Base


class IncidentModel(Base):
    __tablename__ = "verification_incidents"

    id = Column(String(36), primary_key=True)
    account_id = Column(String(64), ForeignKey("accounts.id"), nullable=False, index=True)
    transaction_id = Column(String(36), nullable=True)
    captured_sample = Column(LargeBinary, nullable=False, default=b"")
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    # Solo revisores humanos cambian este estado
    status = Column(String(20), nullable=False, default="PENDING_REVIEW", index=True)
