"""Runtime operator controls for the grounding gate.

Thresholds, weights and feature flags form the system's safety dial. They are
held as one immutable snapshot that is swapped atomically on update, so a
request always evaluates against a consistent set of values.
"""

from __future__ import annotations

import threading
from typing import Any, Dict

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentcore.errors import InvalidControlError
from libs.common.settings import Settings

logger = structlog.get_logger(__name__)


class GroundingThresholds(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    refuse: float = Field(default=0.45, ge=0.0, le=1.0)
    ask_clarify: float = Field(default=0.7, ge=0.0, le=1.0)
    search_more: float = Field(default=0.6, ge=0.0, le=1.0)
    intent_minimum: float = Field(default=0.7, ge=0.0, le=1.0)
    optimizer_retrieval_minimum: float = Field(default=0.7, ge=0.0, le=1.0)
    cache_minimum_freshness: float = Field(default=0.6, ge=0.0, le=1.0)
    context_drift_intent_threshold: float = Field(default=0.75, ge=0.0, le=1.0)


class GroundingWeights(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    retrieval: float = Field(default=0.35, ge=0.0, le=1.0)
    intent: float = Field(default=0.25, ge=0.0, le=1.0)
    freshness: float = Field(default=0.20, ge=0.0, le=1.0)
    diversity: float = Field(default=0.20, ge=0.0, le=1.0)


class GroundingFlags(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    shadow_mode: bool = False
    blocking_enabled: bool = True
    strict_refusal: bool = False
    emergency_bypass: bool = False


class ControlSnapshot(BaseModel):
    """Consistent view of every operator control at one instant."""

    model_config = ConfigDict(frozen=True)

    thresholds: GroundingThresholds = Field(default_factory=GroundingThresholds)
    weights: GroundingWeights = Field(default_factory=GroundingWeights)
    flags: GroundingFlags = Field(default_factory=GroundingFlags)

    @property
    def enforcing(self) -> bool:
        """Whether gate decisions actually steer routing."""
        flags = self.flags
        return flags.blocking_enabled and not flags.shadow_mode and not flags.emergency_bypass


class GroundingControls:
    """Thread-safe holder of the current ``ControlSnapshot``."""

    def __init__(self, snapshot: ControlSnapshot | None = None):
        self._lock = threading.Lock()
        self._snapshot = snapshot or ControlSnapshot()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GroundingControls":
        flags = GroundingFlags(
            shadow_mode=settings.gate_shadow_mode,
            blocking_enabled=settings.gate_blocking_enabled,
            strict_refusal=settings.gate_strict_refusal,
            emergency_bypass=settings.gate_emergency_bypass,
        )
        return cls(ControlSnapshot(flags=flags))

    def snapshot(self) -> ControlSnapshot:
        with self._lock:
            return self._snapshot

    def update_thresholds(self, **changes: float) -> ControlSnapshot:
        return self._swap("thresholds", changes)

    def update_weights(self, **changes: float) -> ControlSnapshot:
        return self._swap("weights", changes)

    def set_flags(self, **changes: bool) -> ControlSnapshot:
        return self._swap("flags", changes)

    def _swap(self, section: str, changes: Dict[str, Any]) -> ControlSnapshot:
        with self._lock:
            current = self._snapshot
            part = getattr(current, section)
            try:
                updated_part = type(part).model_validate({**part.model_dump(), **changes})
            except ValidationError as e:
                raise InvalidControlError(f"invalid {section} update: {e.errors()[0]['msg']}") from e
            self._snapshot = current.model_copy(update={section: updated_part})
            snapshot = self._snapshot

        logger.info("Grounding controls updated", section=section, changes=changes)
        return snapshot
