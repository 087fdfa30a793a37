"""Grounding confidence gate.

Pre-generation decision point: scores whether retrieved and contextual
evidence justifies generating an answer, and returns one of GENERATE,
ASK_CLARIFY, SEARCH_MORE or REFUSE. Generation is never the outcome of a
failed evaluation.
"""

from __future__ import annotations

import hashlib
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from agentcore.grounding.controls import ControlSnapshot, GroundingControls, GroundingThresholds
from agentcore.schemas.grounding import (
    AgentType,
    DecisionType,
    DomainRisk,
    GroundingContext,
    GroundingDecision,
    GroundingMetrics,
    QueryType,
)
from libs.caching.decision_store import DecisionStore

logger = structlog.get_logger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]

FAIL_SAFE_REASONS = ["Unable to verify sufficient grounding", "Internal evaluation error"]

STALE_SOURCE_SECONDS = 5 * 60

DOMAIN_PATTERNS: List[Tuple[DomainRisk, re.Pattern]] = [
    (
        DomainRisk.FINANCE,
        re.compile(r"\b(payment|billing|invoice|cost|price|charge|budget|financial|money|dollar)s?\b", re.I),
    ),
    (
        DomainRisk.SECURITY,
        re.compile(r"\b(security|credential|password|token|auth|permission|access|iam|policy)s?\b", re.I),
    ),
    (
        DomainRisk.LEGAL,
        re.compile(r"\b(legal|compliance|gdpr|hipaa|regulation|policy|contract|terms)s?\b", re.I),
    ),
    (
        DomainRisk.HEALTHCARE,
        re.compile(r"\b(health|medical|patient|diagnosis|treatment|medication)s?\b", re.I),
    ),
]

DOMAIN_REFUSE_BUMP = 0.10
DOMAIN_INTENT_BUMP = 0.05
DOMAIN_INTENT_CAP = 0.85


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def detect_domain(query: str) -> DomainRisk:
    """Classify query text into a risk domain by keyword pattern."""
    for domain, pattern in DOMAIN_PATTERNS:
        if pattern.search(query):
            return domain
    return DomainRisk.GENERAL


def apply_domain_risk(thresholds: GroundingThresholds, domain: DomainRisk) -> GroundingThresholds:
    """Stricter refuse and intent thresholds for regulated domains."""
    if domain == DomainRisk.GENERAL:
        return thresholds
    return thresholds.model_copy(
        update={
            "refuse": clamp(thresholds.refuse + DOMAIN_REFUSE_BUMP),
            "intent_minimum": min(thresholds.intent_minimum + DOMAIN_INTENT_BUMP, DOMAIN_INTENT_CAP),
        }
    )


def stickiness_key(conversation_id: Optional[str], query: str) -> str:
    """Deterministic key for ``(conversation, normalised query)``."""
    normalized = " ".join(query.lower().strip().split())
    content = f"{conversation_id or 'no-conv'}:{normalized}"
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def score_retrieval(context: GroundingContext) -> float:
    retrieval = context.retrieval
    if retrieval.hit_count == 0:
        return 0.0
    if retrieval.max_similarity < 0.6:
        return 0.2

    score = retrieval.mean_similarity
    if retrieval.hit_count >= 3 and retrieval.max_similarity > 0.8:
        score = min(1.0, score + 0.1)
    if retrieval.hit_count == 1:
        score *= 0.8
    if context.document_hits():
        score = min(1.0, score + 0.05)
    return clamp(score)


def score_intent(context: GroundingContext) -> float:
    score = context.intent.confidence
    if context.intent.ambiguous:
        score *= 0.7
    return clamp(score)


def score_freshness(context: GroundingContext, now: Optional[float] = None) -> float:
    if not context.time_sensitive:
        return 1.0
    cache = context.cache
    if cache is None or not cache.used:
        return 1.0
    if cache.freshness_score is not None:
        return clamp(cache.freshness_score)

    now = time.time() if now is None else now
    if cache.valid_until is not None:
        return 1.0 if now < cache.valid_until else 0.2

    stamped = [s for s in context.retrieval.sources if s.timestamp is not None]
    if stamped:
        stale = [s for s in stamped if s.timestamp < now - STALE_SOURCE_SECONDS]
        if len(stale) > len(stamped) / 2:
            return 0.4

    # Cached time-sensitive evidence with no explicit freshness signal
    return 0.3


def score_source_diversity(context: GroundingContext) -> float:
    type_count = len({s.source_type for s in context.retrieval.sources})
    if type_count >= 3:
        return 1.0
    if type_count == 2:
        return 0.8
    if type_count == 1:
        return 0.6
    return 0.2


class GroundingConfidenceGate:
    """Evaluates grounding and returns a ``GroundingDecision``.

    The gate is pure with respect to its inputs apart from the stickiness
    store, structured logging and analytics listeners.
    """

    def __init__(
        self,
        controls: GroundingControls,
        store: Optional[DecisionStore] = None,
        stickiness_ttl_seconds: int = 120,
        max_clarification_attempts: int = 2,
        max_search_attempts: int = 2,
        decision_logging: bool = True,
    ):
        self.controls = controls
        self.store = store
        self.stickiness_ttl_seconds = stickiness_ttl_seconds
        self.max_clarification_attempts = max_clarification_attempts
        self.max_search_attempts = max_search_attempts
        self.decision_logging = decision_logging
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        """Register an analytics listener for evaluated decisions."""
        self._listeners.append(listener)

    async def evaluate(self, context: GroundingContext) -> GroundingDecision:
        start_time = time.time()
        try:
            return await self._evaluate(context, start_time)
        except Exception as e:
            logger.error(
                "Grounding evaluation failed, failing safe",
                error=str(e),
                error_type=type(e).__name__,
                conversation_id=context.conversation_id,
            )
            return self.fail_safe(context)

    def fail_safe(self, context: GroundingContext) -> GroundingDecision:
        """ASK_CLARIFY decision used whenever evaluation cannot complete."""
        return self._early_decision(context, DecisionType.ASK_CLARIFY, FAIL_SAFE_REASONS)

    async def _evaluate(self, context: GroundingContext, start_time: float) -> GroundingDecision:
        snapshot = self.controls.snapshot()

        if snapshot.flags.emergency_bypass:
            logger.warning(
                "Grounding emergency bypass active, allowing generation",
                query_preview=context.query[:100],
            )
            return self._early_decision(context, DecisionType.GENERATE, ["Emergency bypass enabled"], score=1.0)

        loop_refusal = self._check_loop_protection(context)
        if loop_refusal is not None:
            return loop_refusal

        key = stickiness_key(context.conversation_id, context.query)
        # A re-evaluation within the same request must not replay the decision that asked for it.
        if not context.reevaluation:
            cached = await self._get_cached_decision(key)
            if cached is not None:
                logger.info(
                    "Returning sticky grounding decision",
                    decision=cached.decision.value,
                    conversation_id=context.conversation_id,
                )
                return cached

        if context.retrieval.hit_count == 0 and context.query_type != QueryType.OPINION:
            decision = self._early_decision(
                context,
                DecisionType.REFUSE,
                ["No relevant information found", "Cannot generate without grounding on factual queries"],
            )
            await self._cache_decision(key, decision)
            self._log_decision(context, decision, snapshot, DomainRisk.GENERAL, start_time)
            return decision

        metrics = self.score(context, snapshot)
        domain = detect_domain(context.query)
        thresholds = apply_domain_risk(snapshot.thresholds, domain)
        if domain != DomainRisk.GENERAL:
            logger.info(
                "Applying strict domain risk thresholds",
                domain=domain.value,
                refuse_threshold=thresholds.refuse,
                intent_minimum=thresholds.intent_minimum,
            )

        decision_type, reasons = self.determine_decision(context, metrics, thresholds)
        decision = GroundingDecision(
            grounding_score=clamp(metrics.final_score),
            decision=decision_type,
            reasons=reasons,
            metrics=metrics,
            prohibit_memory_write=decision_type != DecisionType.GENERATE,
        )

        await self._cache_decision(key, decision)
        self._log_decision(context, decision, snapshot, domain, start_time)
        self._emit("grounding_evaluated", {"context": context, "decision": decision})
        return decision

    def score(self, context: GroundingContext, snapshot: Optional[ControlSnapshot] = None) -> GroundingMetrics:
        """Component sub-scores and their weighted composite."""
        weights = (snapshot or self.controls.snapshot()).weights
        retrieval = score_retrieval(context)
        intent = score_intent(context)
        freshness = score_freshness(context)
        diversity = score_source_diversity(context)
        final = (
            weights.retrieval * retrieval
            + weights.intent * intent
            + weights.freshness * freshness
            + weights.diversity * diversity
        )
        return GroundingMetrics(
            retrieval_score=retrieval,
            intent_score=intent,
            freshness_score=freshness,
            source_diversity_score=diversity,
            final_score=final,
        )

    def determine_decision(
        self,
        context: GroundingContext,
        metrics: GroundingMetrics,
        thresholds: GroundingThresholds,
    ) -> Tuple[DecisionType, List[str]]:
        """Ordered decision rules; the first match wins."""
        intent_confidence = context.intent.confidence
        score = metrics.final_score
        retrieval = context.retrieval

        if context.context_drift_high and intent_confidence < thresholds.context_drift_intent_threshold:
            return DecisionType.ASK_CLARIFY, [
                "Detected topic shift with uncertain intent",
                f"Intent confidence {intent_confidence:.2f} below drift threshold "
                f"{thresholds.context_drift_intent_threshold:.2f}",
            ]

        if score < thresholds.refuse:
            return DecisionType.REFUSE, [
                f"Grounding score {score:.2f} below minimum {thresholds.refuse:.2f}",
                f"Found {retrieval.hit_count} sources with max similarity {retrieval.max_similarity:.2f}",
            ]

        if intent_confidence < thresholds.intent_minimum:
            return DecisionType.ASK_CLARIFY, [
                f"Intent confidence {intent_confidence:.2f} below threshold {thresholds.intent_minimum:.2f}",
                "Query may be ambiguous or unclear",
            ]

        if (
            context.agent_type == AgentType.OPTIMIZER
            and metrics.retrieval_score < thresholds.optimizer_retrieval_minimum
        ):
            return DecisionType.ASK_CLARIFY, [
                "Cost optimizer requires higher retrieval confidence",
                f"Retrieval score {metrics.retrieval_score:.2f} below optimizer minimum "
                f"{thresholds.optimizer_retrieval_minimum:.2f}",
            ]

        if (
            context.time_sensitive
            and context.cache is not None
            and context.cache.used
            and metrics.freshness_score < thresholds.cache_minimum_freshness
        ):
            return DecisionType.SEARCH_MORE, [
                "Time-sensitive query with stale cached data",
                f"Freshness score {metrics.freshness_score:.2f} below threshold "
                f"{thresholds.cache_minimum_freshness:.2f}",
            ]

        if context.document_ids and not context.document_hits():
            return DecisionType.REFUSE, [
                "User supplied documents but none were retrieved",
                "Unable to ground response in provided documents",
            ]

        reasons = [
            f"Grounding score {score:.2f} passes threshold",
            f"Retrieval: {retrieval.hit_count} sources, max similarity {retrieval.max_similarity:.2f}",
        ]
        if retrieval.sources:
            source_types = sorted({s.source_type for s in retrieval.sources})
            reasons.append(f"Source diversity: {', '.join(source_types)}")
        return DecisionType.GENERATE, reasons

    def _check_loop_protection(self, context: GroundingContext) -> Optional[GroundingDecision]:
        if context.clarification_attempts >= self.max_clarification_attempts:
            return self._early_decision(
                context,
                DecisionType.REFUSE,
                [
                    f"Maximum clarification attempts ({self.max_clarification_attempts}) reached",
                    "Unable to establish clear intent",
                ],
            )
        if context.search_attempts >= self.max_search_attempts:
            return self._early_decision(
                context,
                DecisionType.REFUSE,
                [
                    f"Maximum search attempts ({self.max_search_attempts}) reached",
                    "Unable to retrieve fresh data after multiple attempts",
                ],
            )
        return None

    def _early_decision(
        self,
        context: GroundingContext,
        decision_type: DecisionType,
        reasons: List[str],
        score: float = 0.0,
    ) -> GroundingDecision:
        """Decision produced before full scoring (bypass, loop, hard gate, fail-safe)."""
        metrics = GroundingMetrics(
            retrieval_score=clamp(context.retrieval.max_similarity),
            intent_score=clamp(context.intent.confidence),
            freshness_score=clamp(context.cache.freshness_score or 0.0) if context.cache else 0.0,
            source_diversity_score=score_source_diversity(context),
            final_score=score,
        )
        return GroundingDecision(
            grounding_score=score,
            decision=decision_type,
            reasons=list(reasons),
            metrics=metrics,
            prohibit_memory_write=decision_type != DecisionType.GENERATE,
        )

    async def _get_cached_decision(self, key: str) -> Optional[GroundingDecision]:
        if self.store is None:
            return None
        try:
            payload = await self.store.get(key)
            if payload:
                return GroundingDecision.model_validate_json(payload)
        except Exception as e:
            logger.warning("Failed to get cached grounding decision", error=str(e))
        return None

    async def _cache_decision(self, key: str, decision: GroundingDecision) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(key, decision.model_dump_json(), self.stickiness_ttl_seconds)
        except Exception as e:
            logger.warning("Failed to cache grounding decision", error=str(e))

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                logger.warning("Grounding event listener failed", grounding_event=event, error=str(e))

    def _log_decision(
        self,
        context: GroundingContext,
        decision: GroundingDecision,
        snapshot: ControlSnapshot,
        domain: DomainRisk,
        start_time: float,
    ) -> None:
        if not self.decision_logging:
            return

        log_data = {
            "component": "GroundingConfidenceGate",
            "decision": decision.decision.value,
            "grounding_score": round(decision.grounding_score, 4),
            "reasons": decision.reasons,
            "prohibit_memory_write": decision.prohibit_memory_write,
            "query_type": context.query_type.value,
            "agent_type": context.agent_type.value,
            "domain": domain.value,
            "time_sensitive": context.time_sensitive,
            "context_drift_high": context.context_drift_high,
            "hit_count": context.retrieval.hit_count,
            "max_similarity": context.retrieval.max_similarity,
            "mean_similarity": context.retrieval.mean_similarity,
            "source_types": sorted({s.source_type for s in context.retrieval.sources}),
            "intent_confidence": context.intent.confidence,
            "intent_ambiguous": context.intent.ambiguous,
            "cache_used": bool(context.cache and context.cache.used),
            "clarification_attempts": context.clarification_attempts,
            "search_attempts": context.search_attempts,
            **decision.metrics.model_dump(),
            "evaluation_time_ms": round((time.time() - start_time) * 1000, 2),
            "shadow_mode": snapshot.flags.shadow_mode,
            "blocking_enabled": snapshot.flags.blocking_enabled,
            "strict_refusal": snapshot.flags.strict_refusal,
            "user_id": context.user_id,
            "conversation_id": context.conversation_id,
        }

        if decision.decision == DecisionType.REFUSE:
            logger.warning("Grounding decision", **log_data)
        else:
            logger.info("Grounding decision", **log_data)
