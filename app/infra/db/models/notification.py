# app/infra/db/models/notification.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func

from app.infra.db.base import Base


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(64), nullable=False, index=True)
    type = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    transaction_id = Column(String(36), nullable=True)
    otp_code = Column(String(12), nullable=True)
    read = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
