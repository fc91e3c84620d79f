"""DetectedSeries model for content series found by audits."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, BigInteger, Float
from sqlalchemy.sql import func
import uuid

from database import Base


class DetectedSeries(Base):
    """Recurring content series detected for a channel during an audit."""

    __tablename__ = "detected_series"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    channel_id = Column(String, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False, index=True)
    audit_id = Column(String, ForeignKey("audits.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    detection_method = Column(String, nullable=False)  # pattern, semantic
    pattern = Column(String, nullable=True)
    video_count = Column(Integer, default=0)
    total_views = Column(BigInteger, default=0)
    avg_views = Column(Float, default=0.0)
    avg_engagement_rate = Column(Float, default=0.0)
    first_published = Column(DateTime(timezone=True), nullable=True)
    last_published = Column(DateTime(timezone=True), nullable=True)
    cadence_days = Column(Float, nullable=True)
    performance_trend = Column(String, nullable=True)  # growing, stable, declining, new
    detected_at = Column(DateTime(timezone=True), server_default=func.now())
