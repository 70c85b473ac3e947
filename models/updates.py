# fleetsync/models/updates.py
# Purpose: Explicit partial-update payloads for mutating actions.
# Every field is optional; only fields that were set are sent. Units are the
# ones a human types (seconds, minutes, MB) and are converted once, here.

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from models.entities import ResourceManagerMetrics, WireModel


class PartialUpdate(WireModel):
    def to_payload(self) -> Dict[str, Any]:
        """Wire body containing only the fields the caller set."""

        return self.model_dump(by_alias=True, exclude_unset=True, exclude_none=True)


class BoxCreate(PartialUpdate):
    name: str = Field(min_length=1)
    vpn_config: str = Field(min_length=1, description="name of an uploaded VPN config")
    viewers_per_box: int = Field(default=10, ge=1, le=50)
    stream_url: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        # viewersPerBox is always sent so the backend never falls back silently
        payload = super().to_payload()
        payload["viewersPerBox"] = self.viewers_per_box
        return payload


class BoxUpdate(PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1)
    vpn_config: Optional[str] = Field(default=None, min_length=1)
    viewers_per_box: Optional[int] = Field(default=None, ge=1, le=50)
    stream_url: Optional[str] = None


class ViewerUpdate(PartialUpdate):
    name: Optional[str] = Field(default=None, min_length=1)
    stream_url: Optional[str] = Field(default=None, min_length=1)
    max_tabs: Optional[int] = Field(default=None, ge=1, le=10, description="tabs")
    chat_parsing_enabled: Optional[bool] = Field(
        default=None, serialization_alias="isParseChatEnabled"
    )


class ResourceLimitsUpdate(PartialUpdate):
    cpu_limit: Optional[float] = Field(default=None, gt=0, le=100, description="percent")
    memory_limit: Optional[float] = Field(default=None, gt=0, description="MB")
    network_limit: Optional[float] = Field(default=None, gt=0, description="Mbps")


class ResourceManagerConfigUpdate(BaseModel):
    """Resource manager settings as entered by an operator.

    check_interval_seconds: how often the backend samples usage, >= 10 s.
    idle_timeout_minutes: idle time before a viewer is stopped, >= 1 min.
    memory_threshold_mb: system memory ceiling, >= 100 MB.
    max_viewer_memory_mb: per-viewer memory ceiling, >= 50 MB.
    gc_after_stopped_viewers: run GC after this many stopped viewers, >= 1.
    debug: verbose backend logging; always sent.
    """

    check_interval_seconds: Optional[int] = Field(default=None, ge=10)
    idle_timeout_minutes: Optional[int] = Field(default=None, ge=1)
    memory_threshold_mb: Optional[int] = Field(default=None, ge=100)
    max_viewer_memory_mb: Optional[int] = Field(default=None, ge=50)
    gc_after_stopped_viewers: Optional[int] = Field(default=None, ge=1)
    debug: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"debug": self.debug}
        if self.check_interval_seconds is not None:
            payload["checkInterval"] = self.check_interval_seconds * 1000
        if self.idle_timeout_minutes is not None:
            payload["idleTimeout"] = self.idle_timeout_minutes * 60 * 1000
        if self.memory_threshold_mb is not None:
            payload["memoryThresholdMB"] = self.memory_threshold_mb
        if self.max_viewer_memory_mb is not None:
            payload["maxViewerMemoryMB"] = self.max_viewer_memory_mb
        if self.gc_after_stopped_viewers is not None:
            payload["gcAfterStoppedViewers"] = self.gc_after_stopped_viewers
        return payload

    @classmethod
    def from_metrics(
        cls, metrics: Optional[ResourceManagerMetrics]
    ) -> "ResourceManagerConfigUpdate":
        """Prefill from the current backend settings (milliseconds -> s/min)."""

        if metrics is None:
            return cls()
        return cls.model_construct(
            check_interval_seconds=(
                metrics.check_interval // 1000 if metrics.check_interval else None
            ),
            idle_timeout_minutes=(
                metrics.idle_timeout // 60000 if metrics.idle_timeout else None
            ),
            memory_threshold_mb=metrics.memory_threshold_mb,
            max_viewer_memory_mb=metrics.max_viewer_memory_mb,
            gc_after_stopped_viewers=metrics.gc_after_stopped_viewers,
            debug=metrics.debug,
        )
