"""Explicit finite-state machine for the orchestration pipeline.

Nodes are an enum; behaviour lives in two tables: node -> handler and
node -> route (allowed targets plus a routing function). The runner executes
one node at a time against a single ``ConversationState``, merging each
handler's partial update before routing.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from agentcore.schemas.agent_state import ConversationState

logger = structlog.get_logger(__name__)


class NodeName(str, Enum):
    MEMORY_READER = "memory_reader"
    PROMPT_ANALYZER = "prompt_analyzer"
    TRENDING_DETECTOR = "trending_detector"
    WEB_SCRAPER = "web_scraper"
    CONTENT_SUMMARIZER = "content_summarizer"
    SEMANTIC_CACHE = "semantic_cache"
    GROUNDING_GATE = "grounding_gate"
    CLARIFICATION_NEEDED = "clarification_needed"
    REFUSE_SAFELY = "refuse_safely"
    MASTER_AGENT = "master_agent"
    COST_OPTIMIZER = "cost_optimizer"
    QUALITY_ANALYST = "quality_analyst"
    MEMORY_WRITER = "memory_writer"
    FAILURE_RECOVERY = "failure_recovery"
    END = "__end__"


# Nodes after which the run stops
TERMINAL_NODES = frozenset({NodeName.CLARIFICATION_NEEDED, NodeName.REFUSE_SAFELY, NodeName.FAILURE_RECOVERY})
# Safety terminals a failure override must never preempt
SAFETY_TERMINALS = frozenset({NodeName.CLARIFICATION_NEEDED, NodeName.REFUSE_SAFELY})

ENTRY_NODE = NodeName.MEMORY_READER

Handler = Callable[[ConversationState], Awaitable[Dict[str, Any]]]
RouteFn = Callable[[ConversationState], NodeName]
StopCheck = Callable[[], Optional[str]]


@dataclass(frozen=True)
class Route:
    """Outgoing edges of one node: the allowed targets and the chooser."""

    targets: Tuple[NodeName, ...]
    choose: RouteFn


def fixed(target: NodeName) -> Route:
    return Route(targets=(target,), choose=lambda _state: target)


@dataclass
class RunOutcome:
    state: ConversationState
    terminal_node: NodeName
    steps: int
    stop_reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.stop_reason is not None


class StateMachine:
    """
    Runs handlers in routing order until a terminal node or ``__end__``.

    Usage:
        machine = StateMachine(handlers, routes, max_steps=32, max_failures=3)
        outcome = await machine.run(state, should_stop=lambda: None)
    """

    def __init__(
        self,
        handlers: Dict[NodeName, Handler],
        routes: Dict[NodeName, Route],
        entry: NodeName = ENTRY_NODE,
        max_steps: int = 32,
        max_failures: int = 3,
    ):
        missing_handlers = [n for n in NodeName if n != NodeName.END and n not in handlers]
        if missing_handlers:
            raise ValueError(f"no handler for nodes: {[n.value for n in missing_handlers]}")
        missing_routes = [
            n for n in NodeName if n != NodeName.END and n not in TERMINAL_NODES and n not in routes
        ]
        if missing_routes:
            raise ValueError(f"no route for nodes: {[n.value for n in missing_routes]}")

        self.handlers = handlers
        self.routes = routes
        self.entry = entry
        self.max_steps = max_steps
        self.max_failures = max_failures

    async def run(self, state: ConversationState, should_stop: Optional[StopCheck] = None) -> RunOutcome:
        node = self.entry
        steps = 0

        while True:
            stop_reason = should_stop() if should_stop else None
            if stop_reason:
                logger.warning(
                    "Orchestration stopped before node",
                    node=node.value,
                    reason=stop_reason,
                    conversation_id=state.conversation_id,
                    trace_id=state.trace_id,
                )
                return RunOutcome(state=state, terminal_node=NodeName.END, steps=steps, stop_reason=stop_reason)

            if steps >= self.max_steps and node not in TERMINAL_NODES:
                logger.error(
                    "Step limit reached, forcing failure recovery",
                    node=node.value,
                    steps=steps,
                    conversation_id=state.conversation_id,
                )
                node = NodeName.FAILURE_RECOVERY

            await self._execute(node, state)
            steps += 1

            if node in TERMINAL_NODES:
                return RunOutcome(state=state, terminal_node=node, steps=steps)

            next_node = self._next(node, state)
            if next_node == NodeName.END:
                return RunOutcome(state=state, terminal_node=NodeName.END, steps=steps)
            node = next_node

    async def _execute(self, node: NodeName, state: ConversationState) -> None:
        start_time = time.time()
        logger.debug("Node start", node=node.value, conversation_id=state.conversation_id, trace_id=state.trace_id)
        try:
            update = await self.handlers[node](state)
        except Exception as e:
            logger.error(
                "Node raised unexpectedly",
                node=node.value,
                error=str(e),
                error_type=type(e).__name__,
                conversation_id=state.conversation_id,
                trace_id=state.trace_id,
            )
            # An unguarded error always ends in recovery
            update = {"failure_count": max(state.failure_count + 1, self.max_failures)}

        state.apply_update({"agent_path": [node.value], **(update or {})})
        logger.info(
            "Node finished",
            node=node.value,
            conversation_id=state.conversation_id,
            failure_count=state.failure_count,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

    def _next(self, node: NodeName, state: ConversationState) -> NodeName:
        route = self.routes[node]
        next_node = route.choose(state)

        if next_node not in route.targets:
            logger.error(
                "Router returned an undeclared target",
                node=node.value,
                target=getattr(next_node, "value", str(next_node)),
                conversation_id=state.conversation_id,
            )
            return NodeName.FAILURE_RECOVERY

        if (
            state.failure_count >= self.max_failures
            and state.response is None
            and next_node not in SAFETY_TERMINALS
            and next_node not in (NodeName.END, NodeName.FAILURE_RECOVERY)
        ):
            logger.warning(
                "Failure limit reached, routing to failure recovery",
                node=node.value,
                skipped=next_node.value,
                failure_count=state.failure_count,
            )
            return NodeName.FAILURE_RECOVERY

        return next_node

    def describe(self) -> str:
        """Text rendering of the node and routing tables."""
        lines = [f"entry: {self.entry.value}"]
        for node in NodeName:
            if node == NodeName.END:
                continue
            if node in TERMINAL_NODES:
                lines.append(f"{node.value} -> (terminal)")
                continue
            targets = ", ".join(t.value for t in self.routes[node].targets)
            lines.append(f"{node.value} -> {targets}")
        return "\n".join(lines)
