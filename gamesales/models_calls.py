"""
Deal Call Models
Click-to-call records (Twilio or demo) and the insights extracted from them
"""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .models import generate_uuid


class DealCall(Base):
    __tablename__ = "deal_calls"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    company_id = Column(String(36), nullable=True)
    user_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)

    provider = Column(String(20), nullable=False)  # demo, twilio
    # queued, dialing, in_progress, completed, failed, demo
    status = Column(String(20), nullable=False)
    direction = Column(String(20), default="outbound")
    seller_phone = Column(String(30), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    to_number = Column(String(30), nullable=True)
    provider_call_id = Column(String(255), nullable=True)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)
    recording_url = Column(String(1000), nullable=True)

    # pending, completed, not_requested
    transcript_status = Column(String(20), nullable=True)
    transcript_language = Column(String(10), nullable=True)
    transcript_preview = Column(Text, nullable=True)
    transcript_text = Column(Text, nullable=True)

    last_error = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    call_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    insight = relationship("DealCallInsight", back_populates="call", uselist=False)


class DealCallInsight(Base):
    __tablename__ = "deal_call_insights"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(String(36), ForeignKey("deal_calls.id"), nullable=False, unique=True)
    deal_id = Column(String(36), nullable=False)
    company_id = Column(String(36), nullable=True)
    user_id = Column(String(36), nullable=False)

    status = Column(String(20), nullable=False)
    model = Column(String(50), nullable=False)
    summary = Column(Text, nullable=True)
    objections = Column(JSON, default=list)
    next_steps = Column(JSON, default=list)
    action_items = Column(JSON, default=list)
    suggested_message = Column(Text, nullable=True)
    suggested_stage = Column(String(50), nullable=True)
    raw_output = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    call = relationship("DealCall", back_populates="insight")
