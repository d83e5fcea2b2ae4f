"""
Pricing models for PostgreSQL
- pricing_events: raw webhook/audit events
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from core.database import Base


class PricingEvent(Base):
    __tablename__ = "pricing_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_uid = Column(String(128), nullable=True, index=True)
    provider = Column(String(50), nullable=False, default="dodo")
    event_type = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
