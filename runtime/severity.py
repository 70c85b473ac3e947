# fleetsync/runtime/severity.py
# Purpose: Single source of truth for resource usage severity.

from __future__ import annotations

import os
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, Field, model_validator

from models.entities import ResourceLimits, ResourceUsage


class Severity(str, Enum):
    OK = "ok"
    WARN = "warn"
    CRITICAL = "critical"


class SeverityThresholds(BaseModel):
    """Usage/limit ratios at which a resource turns warn or critical."""

    warn: float = Field(default=0.6, gt=0)
    critical: float = Field(default=0.8, gt=0)

    @model_validator(mode="after")
    def _ordered(self) -> "SeverityThresholds":
        if self.warn > self.critical:
            raise ValueError("warn threshold must not exceed critical threshold")
        return self

    @classmethod
    def from_env(cls) -> "SeverityThresholds":
        return cls(
            warn=float(os.getenv("SEVERITY_WARN", 0.6)),
            critical=float(os.getenv("SEVERITY_CRITICAL", 0.8)),
        )


# Boxes report no limits of their own; these match the box-card indicator.
DEFAULT_BOX_LIMITS = ResourceLimits(cpu_limit=100, memory_limit=1024, network_limit=20)

UsageLike = Union[ResourceUsage, Mapping[str, Any], None]
LimitsLike = Union[ResourceLimits, Mapping[str, Any], None]


def _as_usage(usage: UsageLike) -> ResourceUsage:
    if usage is None:
        return ResourceUsage()
    if isinstance(usage, ResourceUsage):
        return usage
    return ResourceUsage.model_validate(dict(usage))


def _as_limits(limits: LimitsLike) -> ResourceLimits:
    if limits is None:
        return ResourceLimits()
    if isinstance(limits, ResourceLimits):
        return limits
    return ResourceLimits.model_validate(dict(limits))


def usage_ratios(usage: UsageLike, limits: LimitsLike) -> Dict[str, float]:
    """Ratio of usage to limit per resource; unset or zero limits are skipped."""

    u = _as_usage(usage)
    lim = _as_limits(limits)
    ratios: Dict[str, float] = {}
    if lim.cpu_limit:
        ratios["cpu"] = u.cpu / lim.cpu_limit
    if lim.memory_limit:
        ratios["memory"] = u.memory / lim.memory_limit
    if lim.network_limit:
        ratios["network"] = (u.network_rx + u.network_tx) / lim.network_limit
    return ratios


def severity(
    usage: UsageLike,
    limits: LimitsLike,
    thresholds: Optional[SeverityThresholds] = None,
) -> Severity:
    t = thresholds or SeverityThresholds()
    ratios = usage_ratios(usage, limits).values()
    if any(r >= t.critical for r in ratios):
        return Severity.CRITICAL
    if any(r >= t.warn for r in ratios):
        return Severity.WARN
    return Severity.OK
