"""Ledger models: balances, transactions, payments."""
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint

from tanam.backend.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Balance(Base):
    __tablename__ = "balances"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, unique=True, index=True)
    balance = Column(Integer, nullable=False, default=0)  # smallest currency unit
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(16), nullable=False)  # topup|usage
    amount = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    external_id = Column(String(128), nullable=True)
    invoice_url = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|paid|expired
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class LedgerCompensation(Base):
    """Client-side compensating write, one row per idempotency key."""

    __tablename__ = "ledger_compensations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(64), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    action = Column(String(32), nullable=False)  # bot_create_charge|renewal_fallback
    target_id = Column(String(64), nullable=True)
    amount = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_ledger_compensations_key"),
    )
