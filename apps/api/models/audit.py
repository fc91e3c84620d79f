"""Audit model for channel audits."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Audit(Base):
    """One execution of the audit pipeline for one channel."""

    __tablename__ = "audits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_input = Column(String, nullable=False)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True, index=True)
    audit_type = Column(String, nullable=False)  # prospect, baseline
    status = Column(String, default="pending", index=True)  # pending, running, completed, failed
    config_json = Column(JSON, nullable=True)  # Frozen run config
    progress_json = Column(JSON, nullable=True)  # {stage, pct, message}
    channel_snapshot_json = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    failed_stage = Column(String, nullable=True)
    total_tokens = Column(Integer, default=0, nullable=False)
    total_cost = Column(Float, default=0.0, nullable=False)
    youtube_api_calls = Column(Integer, default=0, nullable=False)
    created_by = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    channel = relationship("Channel", back_populates="audits")
    sections = relationship(
        "AuditSection",
        back_populates="audit",
        cascade="all, delete-orphan",
        order_by="AuditSection.position",
    )
