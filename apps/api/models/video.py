"""Video model for channel uploads."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Video(Base):
    """Upload from a catalogued channel with its latest public stats."""

    __tablename__ = "videos"

    id = Column(String, primary_key=True)  # Platform video id
    channel_id = Column(String, ForeignKey("channels.id"), nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    duration_seconds = Column(Integer, nullable=True)
    video_type = Column(String, nullable=True)  # short, long
    view_count = Column(BigInteger, default=0)
    like_count = Column(BigInteger, default=0)
    comment_count = Column(BigInteger, default=0)
    detected_series_id = Column(String, ForeignKey("detected_series.id", ondelete="SET NULL"), nullable=True)
    metrics_updated_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    channel = relationship("Channel", back_populates="videos")
