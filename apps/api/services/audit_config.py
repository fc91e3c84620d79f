"""Per-run audit configuration, frozen into the audit row at creation."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from config import settings


class AuditRunConfig(BaseModel):
    """Knobs for one audit run. Defaults come from application settings."""

    model_config = ConfigDict(frozen=True)

    benchmark_window_days: int = Field(default_factory=lambda: settings.AUDIT_BENCHMARK_WINDOW_DAYS, ge=1)
    peer_limit: int = Field(default_factory=lambda: settings.AUDIT_PEER_LIMIT, ge=1, le=200)
    peer_fetch_workers: int = Field(default_factory=lambda: settings.AUDIT_PEER_FETCH_WORKERS, ge=1, le=32)
    peer_videos_per_channel: int = Field(default_factory=lambda: settings.AUDIT_PEER_VIDEOS_PER_CHANNEL, ge=1)
    max_videos: Optional[int] = Field(default=None, ge=1)  # None = tier default
    category: Optional[str] = None
    force_refresh: bool = False
    external_timeout_seconds: float = Field(default_factory=lambda: settings.AUDIT_EXTERNAL_TIMEOUT_SECONDS, gt=0)
    stage_timeout_seconds: float = Field(default_factory=lambda: settings.AUDIT_STAGE_TIMEOUT_SECONDS, gt=0)

    @classmethod
    def from_stored(cls, payload: Optional[Dict[str, Any]]) -> "AuditRunConfig":
        return cls.model_validate(payload or {})

    def to_stored(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
