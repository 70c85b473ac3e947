# fleetsync/models/entities.py
# Purpose: Pydantic schemas for the remote entities mirrored by the store.

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for backend payloads: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


def _ref_id(value: Any) -> Any:
    # populated references arrive as full objects; keep only the id
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return value


class EntityStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATUSES = frozenset(
    {EntityStatus.STARTING, EntityStatus.RUNNING, EntityStatus.STOPPING}
)


class PlaybackStatus(WireModel):
    is_playing: bool = False
    resolution: Optional[str] = None
    quality: Optional[str] = None
    buffering: Optional[bool] = None
    volume: Optional[float] = None


class ResourceLimits(WireModel):
    """Configured ceilings; a missing limit is not classified."""

    cpu_limit: Optional[float] = Field(default=None, description="percent")
    memory_limit: Optional[float] = Field(default=None, description="MB")
    network_limit: Optional[float] = Field(default=None, description="Mbps, rx+tx")


class ResourceUsage(WireModel):
    cpu: float = Field(default=0.0, description="percent")
    memory: float = Field(default=0.0, description="MB")
    network_rx: float = Field(default=0.0, description="Mbps")
    network_tx: float = Field(default=0.0, description="Mbps")


class ResourceSnapshot(ResourceUsage):
    last_updated: Optional[datetime] = None
    resource_limits: Optional[ResourceLimits] = None


class Tab(WireModel):
    """One browser page of a viewer. Its position in the list is its identity."""

    status: Optional[str] = None
    url: Optional[str] = None
    last_screenshot_url: Optional[str] = None
    last_screenshot_timestamp: Optional[datetime] = None
    playback_status: Optional[PlaybackStatus] = None


class Box(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    name: str = ""
    status: EntityStatus = EntityStatus.IDLE
    viewers: List[str] = Field(default_factory=list)
    vpn_config: Optional[str] = None
    stream_url: Optional[str] = None
    viewers_per_box: int = 10
    ip_address: Optional[str] = None
    location: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    resource_limits: Optional[ResourceLimits] = None

    @field_validator("viewers", mode="before")
    @classmethod
    def _viewer_ids(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [_ref_id(item) for item in v]
        return v


class Viewer(WireModel):
    id: str = Field(validation_alias=AliasChoices("_id", "id"))
    box_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("boxId", "box", "box_id")
    )
    name: str = ""
    status: EntityStatus = EntityStatus.IDLE
    stream_url: Optional[str] = None
    streamer: Optional[str] = None
    chat_parsing_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "isParseChatEnabled", "chatParsingEnabled", "chat_parsing_enabled"
        ),
    )
    max_tabs: int = 1
    tabs: List[Tab] = Field(default_factory=list)
    last_screenshot_url: Optional[str] = None
    last_screenshot_timestamp: Optional[datetime] = None
    playback_status: Optional[PlaybackStatus] = None
    resources: Optional[ResourceUsage] = None
    resource_limits: Optional[ResourceLimits] = None
    error: Optional[str] = None

    @field_validator("box_id", mode="before")
    @classmethod
    def _box_ref(cls, v: Any) -> Any:
        return _ref_id(v)


class SystemMemory(WireModel):
    total: Optional[float] = None
    free: Optional[float] = None
    used: Optional[float] = None
    process_rss: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("processRSS", "process_rss")
    )
    process_heap_used: Optional[float] = None


class HostMetrics(WireModel):
    uptime: float = 0.0
    memory: SystemMemory = Field(default_factory=SystemMemory)
    load_avg: List[float] = Field(default_factory=list)


class Counts(WireModel):
    total: int = 0
    running: int = Field(default=0, validation_alias=AliasChoices("running", "active"))
    idle: int = Field(default=0, validation_alias=AliasChoices("idle", "inactive"))


class ApplicationMetrics(WireModel):
    viewers: Counts = Field(default_factory=Counts)
    boxes: Counts = Field(default_factory=Counts)
    streams: Counts = Field(default_factory=Counts)


class ResourceManagerMetrics(WireModel):
    check_interval: Optional[int] = Field(default=None, description="milliseconds")
    idle_timeout: Optional[int] = Field(default=None, description="milliseconds")
    memory_threshold_mb: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("memoryThresholdMB", "memory_threshold_mb")
    )
    max_viewer_memory_mb: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("maxViewerMemoryMB", "max_viewer_memory_mb")
    )
    gc_after_stopped_viewers: Optional[int] = None
    debug: bool = False
    total_viewers_stopped: int = 0
    total_memory_recovered: float = Field(default=0.0, description="MB")


class SystemMetrics(WireModel):
    timestamp: Optional[datetime] = None
    system: HostMetrics = Field(default_factory=HostMetrics)
    application: ApplicationMetrics = Field(default_factory=ApplicationMetrics)
    resource_manager: Optional[ResourceManagerMetrics] = None


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEntry(WireModel):
    timestamp: Optional[datetime] = None
    level: LogLevel = LogLevel.INFO
    message: str = ""


class ChatMessage(WireModel):
    timestamp: Optional[datetime] = None
    username: str = ""
    message: str = ""
    emotes: List[dict] = Field(default_factory=list)


class FleetStats(BaseModel):
    total_boxes: int = 0
    active_boxes: int = 0
    error_boxes: int = 0
    total_viewers: int = 0
    active_viewers: int = 0
    error_viewers: int = 0
