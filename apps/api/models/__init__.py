"""Models package."""

from .channel import Channel
from .video import Video
from .detected_series import DetectedSeries
from .audit import Audit
from .audit_section import AuditSection
