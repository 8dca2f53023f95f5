"""Chatbot and plan catalog models."""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship

from tanam.backend.database import Base
from tanam.backend.models.ledger import _uuid

# PROVISIONING -> NEED_SCAN_QR -> WORKING
STATUS_WORKING = "WORKING"


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(128), nullable=False)
    price_per_month = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    ai_quota = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Chatbot(Base):
    __tablename__ = "chatbot"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(String(32), nullable=True)  # PROVISIONING|NEED_SCAN_QR|WORKING
    plan_id = Column(String(36), ForeignKey("plans.id"), nullable=False)
    is_auto_renewal = Column(Boolean, nullable=True)
    ai_usages = Column(Integer, nullable=True)
    ai_quota = Column(Integer, nullable=True)
    prompt = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    plan = relationship("Plan", lazy="joined")
