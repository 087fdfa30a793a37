"""Grounding confidence gate and its runtime controls."""

from agentcore.grounding.confidence_gate import GroundingConfidenceGate
from agentcore.grounding.context_builder import GroundingContextBuilder
from agentcore.grounding.controls import ControlSnapshot, GroundingControls

__all__ = ["ControlSnapshot", "GroundingConfidenceGate", "GroundingContextBuilder", "GroundingControls"]
