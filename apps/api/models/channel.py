"""Channel model for the local channel catalogue."""

from sqlalchemy import Column, String, DateTime, BigInteger, Integer, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Channel(Base):
    """A video channel known to the system (audited, tracked or imported)."""

    __tablename__ = "channels"

    id = Column(String, primary_key=True)  # Platform channel id (UC...)
    title = Column(String, nullable=False, default="")
    handle = Column(String, nullable=True)
    category = Column(String, nullable=True, index=True)
    subscriber_count = Column(BigInteger, default=0, index=True)
    video_count = Column(Integer, default=0)
    view_count = Column(BigInteger, default=0)
    size_tier = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    uploads_playlist_id = Column(String, nullable=True)
    created_via = Column(String, nullable=True)  # audit, competitor_import, manual
    sync_enabled = Column(Boolean, default=True, nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    videos = relationship("Video", back_populates="channel", cascade="all, delete-orphan")
    audits = relationship("Audit", back_populates="channel")
