"""Orchestration state machine and the query orchestrator built on it."""

from agentcore.orchestrators.graph import NodeName, RunOutcome, StateMachine
from agentcore.orchestrators.query_orchestrator import QueryOrchestrator

__all__ = ["NodeName", "QueryOrchestrator", "RunOutcome", "StateMachine"]
