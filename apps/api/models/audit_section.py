"""AuditSection model for per-stage checkpoints."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid

from database import Base


class AuditSection(Base):
    """Persisted status and result of one pipeline stage for one audit."""

    __tablename__ = "audit_sections"
    __table_args__ = (UniqueConstraint("audit_id", "stage", name="uq_audit_sections_audit_stage"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    audit_id = Column(String, ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(String, nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, running, completed, failed
    result_json = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    audit = relationship("Audit", back_populates="sections")
