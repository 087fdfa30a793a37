"""Query orchestrator for the grounded response pipeline.

This module wires the node handlers, routing table and collaborators into the
state machine and exposes ``process()``, the single entry point for one
request. Nodes never raise into the machine: external calls go through
``_call_external`` (timeout + logging), and a failure becomes a
``failure_count`` increment in the node's partial update.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import numpy as np
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentcore.composer.messages import (
    APOLOGY_MESSAGE,
    build_clarification_message,
    build_generation_messages,
    build_quality_messages,
    build_refusal_message,
)
from agentcore.composer.prompt_analysis import (
    analyze_complexity,
    estimate_prompt_cost,
    needs_refinement,
    refine_prompt,
)
from agentcore.composer.quality import assess_risk_level, calculate_total_cost, extract_quality_metrics
from agentcore.context.topic_tracker import TopicTracker
from agentcore.errors import ExternalCallError
from agentcore.grounding.confidence_gate import GroundingConfidenceGate
from agentcore.grounding.context_builder import GroundingContextBuilder
from agentcore.grounding.controls import GroundingControls
from agentcore.llm.generation import MODEL_HINT_FALLBACK, MODEL_HINT_PRIMARY, ChatOpenAIBackend, GenerationBackend
from agentcore.orchestrators.failure_recovery import FailureRecoveryPolicy
from agentcore.orchestrators.graph import NodeName, RunOutcome, StateMachine
from agentcore.orchestrators.routing import Router
from agentcore.schemas.agent_state import (
    ContentSummary,
    ConversationState,
    FinalResult,
    Message,
    ProcessOptions,
    ScrapedPage,
    create_initial_state,
)
from agentcore.schemas.grounding import DecisionType, GroundingDecision, GroundingSource
from agentcore.tools.content_summarizer import ContentSummarizer, extractive_summary
from agentcore.tools.embeddings import HashingEmbedder
from agentcore.tools.retrieval import InMemoryRetrievalAdapter, RetrievalAdapter
from agentcore.tools.trending_detector import TrendingDetector
from agentcore.tools.web_scraper import WebScraper
from libs.caching.decision_store import InMemoryDecisionStore, RedisDecisionStore
from libs.caching.redis_client import get_redis_client
from libs.caching.semantic_cache import SemanticCache
from libs.common.settings import Settings, get_settings
from libs.memory.coordinator import Exchange, MemoryContext, MemoryCoordinator, MemoryService

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "The request was cancelled before an answer was ready."
MAX_MEMORY_TAGS = 5


class QueryOrchestrator:
    """
    Orchestrates one request through the grounded response pipeline.

    Usage:
        orchestrator = await QueryOrchestrator.create()
        result = await orchestrator.process("conv-1", "user-1", "What changed in the latest release?")
    """

    def __init__(
        self,
        gate: GroundingConfidenceGate,
        controls: GroundingControls,
        backend: GenerationBackend,
        retrieval: RetrievalAdapter,
        cache: SemanticCache,
        memory: Optional[MemoryService] = None,
        trending: Optional[TrendingDetector] = None,
        scraper: Optional[WebScraper] = None,
        summarizer: Optional[ContentSummarizer] = None,
        topic_tracker: Optional[TopicTracker] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.gate = gate
        self.controls = controls
        self.backend = backend
        self.retrieval = retrieval
        self.cache = cache
        self.memory = memory
        self.trending = trending or TrendingDetector()
        self.topic_tracker = topic_tracker or TopicTracker()
        self.scraper = scraper or WebScraper(
            timeout=self.settings.web_fetch_timeout,
            concurrency=self.settings.web_fetch_concurrency,
            batch_delay=self.settings.web_fetch_batch_delay,
            sleep=sleep,
        )
        self.summarizer = summarizer or ContentSummarizer(backend)
        self.context_builder = GroundingContextBuilder(self.trending, self.topic_tracker)
        self.recovery = FailureRecoveryPolicy.from_settings(self.settings, backend, sleep=sleep)
        self._sleep = sleep

        self.router = Router(controls, self.trending, max_failures=self.settings.max_failures)
        self.machine = StateMachine(
            handlers=self._handlers(),
            routes=self.router.routes(),
            max_steps=self.settings.max_graph_steps,
            max_failures=self.settings.max_failures,
        )
        logger.info("Query orchestrator initialized", graph_nodes=len(self.machine.handlers))

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        backend: Optional[GenerationBackend] = None,
        retrieval: Optional[RetrievalAdapter] = None,
    ) -> "QueryOrchestrator":
        """Build an orchestrator from settings, degrading to in-process stores without Redis."""
        settings = settings or get_settings()
        redis_client = await get_redis_client(settings)

        controls = GroundingControls.from_settings(settings)
        store = RedisDecisionStore(redis_client) if redis_client is not None else InMemoryDecisionStore()
        gate = GroundingConfidenceGate(
            controls,
            store=store,
            stickiness_ttl_seconds=settings.decision_stickiness_ttl_seconds,
            max_clarification_attempts=settings.max_clarification_attempts,
            max_search_attempts=settings.max_search_attempts,
            decision_logging=settings.gate_decision_logging,
        )
        embedder = HashingEmbedder()
        cache = SemanticCache(
            embedder.embed,
            capacity=settings.cache_capacity,
            ttl_seconds=settings.cache_ttl_seconds,
            similarity_threshold=settings.cache_similarity_threshold,
        )
        memory = MemoryCoordinator(redis_client) if redis_client is not None else None
        if memory is None:
            logger.warning("Redis unavailable, memory disabled")

        return cls(
            gate=gate,
            controls=controls,
            backend=backend or ChatOpenAIBackend.from_settings(settings),
            retrieval=retrieval or InMemoryRetrievalAdapter(embedder),
            cache=cache,
            memory=memory,
            settings=settings,
        )

    def _handlers(self) -> Dict[NodeName, Callable[[ConversationState], Awaitable[Dict[str, Any]]]]:
        return {
            NodeName.MEMORY_READER: self._memory_reader_node,
            NodeName.PROMPT_ANALYZER: self._prompt_analyzer_node,
            NodeName.TRENDING_DETECTOR: self._trending_detector_node,
            NodeName.WEB_SCRAPER: self._web_scraper_node,
            NodeName.CONTENT_SUMMARIZER: self._content_summarizer_node,
            NodeName.SEMANTIC_CACHE: self._semantic_cache_node,
            NodeName.GROUNDING_GATE: self._grounding_gate_node,
            NodeName.CLARIFICATION_NEEDED: self._clarification_needed_node,
            NodeName.REFUSE_SAFELY: self._refuse_safely_node,
            NodeName.MASTER_AGENT: self._master_agent_node,
            NodeName.COST_OPTIMIZER: self._cost_optimizer_node,
            NodeName.QUALITY_ANALYST: self._quality_analyst_node,
            NodeName.MEMORY_WRITER: self._memory_writer_node,
            NodeName.FAILURE_RECOVERY: self._failure_recovery_node,
        }

    def describe_graph(self) -> str:
        return self.machine.describe()

    async def process(
        self,
        conversation_id: str,
        user_id: str,
        query: str,
        options: Optional[ProcessOptions] = None,
    ) -> FinalResult:
        """Run one request through the pipeline. Never raises for node errors."""
        options = options or ProcessOptions()
        start_time = time.time()
        state = create_initial_state(
            user_id=user_id,
            conversation_id=conversation_id,
            query=query,
            options=options,
            default_cost_budget=self.settings.default_cost_budget,
        )

        logger.info(
            "Processing query",
            conversation_id=conversation_id,
            user_id=user_id,
            chat_mode=state.chat_mode,
            document_count=len(state.document_ids),
            trace_id=state.trace_id,
        )

        try:
            outcome = await self.machine.run(state, should_stop=self._stop_check(options))
        except Exception as e:
            logger.error(
                "Orchestration run failed",
                error=str(e),
                error_type=type(e).__name__,
                conversation_id=conversation_id,
                trace_id=state.trace_id,
            )
            state.apply_update({
                "failure_count": state.failure_count + 1,
                "response": state.response or APOLOGY_MESSAGE,
                "prohibit_memory_write": True,
                "risk_level": "high",
            })
            outcome = RunOutcome(state=state, terminal_node=NodeName.FAILURE_RECOVERY, steps=len(state.agent_path))

        result = self._final_result(outcome)
        logger.info(
            "Query processed",
            conversation_id=conversation_id,
            terminal_node=result.terminal_node,
            decision=result.decision.decision.value if result.decision else None,
            agent_path=result.agent_path,
            cache_hit=result.cache_hit,
            cancelled=result.cancelled,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            trace_id=state.trace_id,
        )
        return result

    def _stop_check(self, options: ProcessOptions) -> Callable[[], Optional[str]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + options.deadline_seconds if options.deadline_seconds else None
        cancel_event = options.cancel_event

        def should_stop() -> Optional[str]:
            if cancel_event is not None and cancel_event.is_set():
                return "cancelled"
            if deadline is not None and loop.time() >= deadline:
                return "deadline_exceeded"
            return None

        return should_stop

    def _final_result(self, outcome: RunOutcome) -> FinalResult:
        state = outcome.state
        if state.response:
            response = state.response
        elif outcome.cancelled:
            response = CANCELLED_MESSAGE
        else:
            response = APOLOGY_MESSAGE

        metadata = state.metadata.model_dump(mode="json", exclude_none=True, exclude={"memory"})
        metadata["trace_id"] = state.trace_id
        if outcome.stop_reason:
            metadata["stop_reason"] = outcome.stop_reason

        return FinalResult(
            response=response,
            terminal_node=outcome.terminal_node.value,
            decision=state.grounding_decision,
            agent_path=list(state.agent_path),
            messages=list(state.messages),
            cache_hit=state.cache_hit,
            risk_level=state.risk_level,
            cost=round(calculate_total_cost(state.prompt_cost, state.agent_path), 6),
            optimizations_applied=list(state.optimizations_applied),
            clarification_attempts=state.clarification_attempts,
            search_attempts=state.search_attempts,
            failure_count=state.failure_count,
            prohibit_memory_write=state.prohibit_memory_write,
            memory_written=state.metadata.memory_written,
            cancelled=outcome.cancelled,
            metadata=metadata,
        )

    async def _call_external(self, label: str, awaitable: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Await an external call with a timeout; failures surface as ``ExternalCallError``."""
        timeout = timeout if timeout is not None else self.settings.external_call_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "External call failed",
                call=label,
                timeout=timeout,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExternalCallError(label, e) from e

    # Node handlers

    async def _memory_reader_node(self, state: ConversationState) -> Dict[str, Any]:
        if self.memory is None:
            return {"metadata": {"memory": MemoryContext()}}
        try:
            memory = await self._call_external("memory_read", self.memory.read(state.user_id))
        except ExternalCallError:
            return {"failure_count": state.failure_count + 1, "metadata": {"memory": MemoryContext()}}

        logger.debug("memory_reader completed", preferences=len(memory.preferences), insights=len(memory.insights))
        return {"metadata": {"memory": memory}}

    async def _prompt_analyzer_node(self, state: ConversationState) -> Dict[str, Any]:
        query = state.query
        prompt_cost = estimate_prompt_cost(query)
        complexity = analyze_complexity(query)
        update: Dict[str, Any] = {"prompt_cost": prompt_cost, "metadata": {"prompt_complexity": complexity}}

        if needs_refinement(query, state.cost_budget):
            refined = refine_prompt(query)
            update["refined_prompt"] = refined
            update["prompt_cost"] = estimate_prompt_cost(refined)
            update["optimizations_applied"] = ["prompt_refinement"]
            logger.info(
                "Prompt refined",
                complexity=complexity,
                original_length=len(query),
                refined_length=len(refined),
                conversation_id=state.conversation_id,
            )
        return update

    async def _trending_detector_node(self, state: ConversationState) -> Dict[str, Any]:
        if state.document_ids:
            # User-supplied documents take precedence over any web lookup
            logger.info(
                "Skipping trending detection for document-grounded query",
                document_count=len(state.document_ids),
                conversation_id=state.conversation_id,
            )
            return {"needs_web_data": False, "metadata": {"trending_skipped_reason": "document_grounded"}}

        analysis = self.trending.analyze(state.effective_query)
        return {
            "needs_web_data": analysis.needs_real_time_data,
            "web_sources": analysis.suggested_sources[: self.settings.web_max_sources],
            "metadata": {"trending": analysis},
        }

    async def _web_scraper_node(self, state: ConversationState) -> Dict[str, Any]:
        if state.document_ids:
            logger.info("Skipping web scraping for document-grounded query", conversation_id=state.conversation_id)
            return {"scraped_pages": [], "metadata": {"trending_skipped_reason": "document_grounded"}}

        urls = (state.web_sources or self.trending.sources_for(state.effective_query))[: self.settings.web_max_sources]
        if not urls:
            return {
                "scraped_pages": [],
                "metadata": {"scraping_failed": True, "scraping_stats": {"requested": 0, "succeeded": 0}},
            }

        batches = -(-len(urls) // self.settings.web_fetch_concurrency)
        budget = batches * self.settings.web_fetch_timeout + max(batches - 1, 0) * self.settings.web_fetch_batch_delay

        try:
            results = await self._call_external("web_scrape", self.scraper.scrape_many(urls), timeout=budget)
        except ExternalCallError:
            return {
                "failure_count": state.failure_count + 1,
                "scraped_pages": [],
                "metadata": {"scraping_failed": True, "scraping_stats": {"requested": len(urls), "succeeded": 0}},
            }

        pages = [
            ScrapedPage(url=r.url, title=r.title, text=r.text, fetched_at=r.fetched_at)
            for r in results
            if r.success
        ]
        stats = {"requested": len(urls), "succeeded": len(pages)}
        if not pages:
            logger.warning("All web fetches failed, continuing without web content", **stats)
        return {
            "web_sources": urls,
            "scraped_pages": pages,
            "metadata": {"scraping_failed": not pages, "scraping_stats": stats},
        }

    async def _content_summarizer_node(self, state: ConversationState) -> Dict[str, Any]:
        pages = state.scraped_pages
        try:
            summary = await self._call_external(
                "content_summary",
                self.summarizer.summarize(state.effective_query, pages),
                timeout=self.settings.generation_timeout,
            )
        except ExternalCallError:
            summary = ContentSummary(text=extractive_summary(pages), pages=list(pages), extractive=True)
            return {"failure_count": state.failure_count + 1, "metadata": {"content_summary": summary}}

        return {"optimizations_applied": ["web_content_integration"], "metadata": {"content_summary": summary}}

    async def _semantic_cache_node(self, state: ConversationState) -> Dict[str, Any]:
        if state.document_ids:
            return {"cache_hit": False}
        try:
            match = await self._call_external("semantic_cache_lookup", self.cache.match(state.effective_query))
        except ExternalCallError:
            return {"cache_hit": False, "failure_count": state.failure_count + 1}

        if match is None:
            return {"cache_hit": False}
        return {
            "cache_hit": True,
            "response": match.response_text,
            "optimizations_applied": ["semantic_cache"],
            "metadata": {"cache_hit_similarity": round(match.similarity, 4)},
        }

    async def _evaluate_grounding(self, state: ConversationState) -> Dict[str, Any]:
        """Gather retrieval evidence, build the context and run the gate."""
        failures = state.failure_count
        query = state.effective_query

        hits = []
        try:
            hits = await self._call_external(
                "retrieval_search", self.retrieval.search(query, self.settings.retrieval_top_k)
            )
        except ExternalCallError:
            failures += 1

        web_sources: List[GroundingSource] = []
        if state.scraped_pages:
            try:
                web_sources = await self._call_external("web_source_scoring", self._web_sources(query, state.scraped_pages))
            except ExternalCallError:
                failures += 1

        # Pages fetched during this request supersede cache-served evidence
        cache_signal = None
        signal_fn = getattr(self.retrieval, "cache_signal", None)
        if signal_fn is not None and not state.scraped_pages:
            try:
                cache_signal = await self._call_external("cache_signal", signal_fn(query))
            except ExternalCallError:
                failures += 1

        reevaluation = NodeName.GROUNDING_GATE.value in state.agent_path
        context = self.context_builder.build(state, hits, web_sources, cache_signal, reevaluation=reevaluation)
        try:
            decision = await self._call_external("grounding_evaluate", self.gate.evaluate(context))
        except ExternalCallError:
            failures += 1
            decision = self.gate.fail_safe(context)

        return {
            "grounding_decision": decision,
            "prohibit_memory_write": decision.prohibit_memory_write,
            "failure_count": failures,
        }

    async def _web_sources(self, query: str, pages: List[ScrapedPage]) -> List[GroundingSource]:
        query_vec = np.asarray(await self.retrieval.embed(query), dtype=float)
        sources = []
        for page in pages:
            page_vec = np.asarray(await self.retrieval.embed(f"{page.title} {page.text[:2000]}"), dtype=float)
            denom = np.linalg.norm(query_vec) * np.linalg.norm(page_vec)
            similarity = float(np.dot(query_vec, page_vec) / denom) if denom > 0 else 0.0
            sources.append(
                GroundingSource(
                    source_type="web",
                    source_id=page.url,
                    similarity=min(1.0, max(0.0, similarity)),
                    timestamp=page.fetched_at,
                )
            )
        return sources

    async def _grounding_gate_node(self, state: ConversationState) -> Dict[str, Any]:
        update = await self._evaluate_grounding(state)
        decision: GroundingDecision = update["grounding_decision"]
        if decision.decision == DecisionType.SEARCH_MORE and self.controls.snapshot().enforcing:
            update["search_attempts"] = state.search_attempts + 1
        return update

    async def _clarification_needed_node(self, state: ConversationState) -> Dict[str, Any]:
        return {
            "response": build_clarification_message(state.grounding_decision),
            "clarification_attempts": state.clarification_attempts + 1,
            "prohibit_memory_write": True,
        }

    async def _refuse_safely_node(self, state: ConversationState) -> Dict[str, Any]:
        return {
            "response": build_refusal_message(state.grounding_decision),
            "prohibit_memory_write": True,
        }

    async def _master_agent_node(self, state: ConversationState) -> Dict[str, Any]:
        update: Dict[str, Any] = {}
        decision = state.grounding_decision

        if decision is None:
            logger.warning(
                "master_agent reached without a grounding decision, re-evaluating",
                conversation_id=state.conversation_id,
            )
            update = await self._evaluate_grounding(state)
            decision = update["grounding_decision"]
            if self.controls.snapshot().enforcing and not decision.allows_generation:
                logger.error(
                    "Emergency re-evaluation disagrees with generation, halting",
                    decision=decision.decision.value,
                    reasons=decision.reasons,
                    conversation_id=state.conversation_id,
                )
                message = (
                    build_refusal_message(decision)
                    if decision.decision == DecisionType.REFUSE
                    else build_clarification_message(decision)
                )
                update.update({
                    "response": message,
                    "prohibit_memory_write": True,
                    "metadata": {"generation_halted": True},
                })
                return update

        failure_count = update.get("failure_count", state.failure_count)
        remaining = self.settings.max_failures - failure_count
        if remaining <= 0:
            update["failure_count"] = failure_count
            return update

        messages = build_generation_messages(
            chat_mode=state.chat_mode,
            history=state.messages[:-1],
            query=state.effective_query,
            memory=state.metadata.memory,
            summary=state.metadata.content_summary,
            scraping_failed=state.metadata.scraping_failed,
        )

        response: Optional[str] = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(remaining),
                wait=wait_exponential(multiplier=self.settings.generation_retry_multiplier, max=5),
                retry=retry_if_exception_type(ExternalCallError),
                reraise=True,
                sleep=self._sleep,
            ):
                with attempt:
                    try:
                        response = await self._call_external(
                            "generation",
                            self.backend.generate(messages, model_hint=MODEL_HINT_PRIMARY),
                            timeout=self.settings.generation_timeout,
                        )
                    except ExternalCallError:
                        failure_count += 1
                        raise
        except ExternalCallError:
            logger.error(
                "Generation failed after retries",
                failure_count=failure_count,
                conversation_id=state.conversation_id,
            )
            update["failure_count"] = failure_count
            return update

        if decision.decision == DecisionType.GENERATE and not state.document_ids:
            try:
                await self._call_external("semantic_cache_store", self.cache.store(state.effective_query, response))
            except ExternalCallError:
                failure_count += 1

        update.update({
            "response": response,
            "messages": [Message(role="assistant", content=response)],
            "failure_count": failure_count,
            "metadata": {"generation_model": MODEL_HINT_PRIMARY, "strategy": state.chat_mode},
        })
        return update

    async def _cost_optimizer_node(self, state: ConversationState) -> Dict[str, Any]:
        estimated = calculate_total_cost(state.prompt_cost, [*state.agent_path, NodeName.COST_OPTIMIZER.value])
        update: Dict[str, Any] = {"metadata": {"extras": {"estimated_cost": round(estimated, 6)}}}
        if estimated > state.cost_budget:
            logger.warning(
                "Estimated cost exceeds budget",
                estimated_cost=round(estimated, 6),
                cost_budget=state.cost_budget,
                conversation_id=state.conversation_id,
            )
            update["optimizations_applied"] = ["budget_exceeded"]
        return update

    async def _quality_analyst_node(self, state: ConversationState) -> Dict[str, Any]:
        messages = build_quality_messages(state.effective_query, state.response or "", state.optimizations_applied)
        try:
            analysis = await self._call_external(
                "quality_analysis",
                self.backend.generate(messages, model_hint=MODEL_HINT_FALLBACK),
                timeout=self.settings.generation_timeout,
            )
        except ExternalCallError:
            return {"failure_count": state.failure_count + 1}

        metrics = extract_quality_metrics(analysis)
        return {
            "risk_level": assess_risk_level(metrics.score, state.optimizations_applied),
            "metadata": {"quality_score": metrics.score, "quality_recommendations": metrics.recommendations},
        }

    async def _memory_writer_node(self, state: ConversationState) -> Dict[str, Any]:
        if state.prohibit_memory_write:
            logger.info("Memory write prohibited by grounding decision", conversation_id=state.conversation_id)
            return {"metadata": {"memory_written": False}}
        if not state.response or not state.response.strip():
            return {"metadata": {"memory_written": False}}

        topic = self.topic_tracker.assess(state.query, state.prior_user_turns)
        if topic.subject_confidence < self.settings.memory_min_subject_confidence:
            logger.info(
                "Subject confidence too low for memory write",
                subject_confidence=topic.subject_confidence,
                minimum=self.settings.memory_min_subject_confidence,
                conversation_id=state.conversation_id,
            )
            return {"metadata": {"memory_written": False, "subject_confidence": topic.subject_confidence}}

        if self.memory is None:
            return {"metadata": {"memory_written": False, "subject_confidence": topic.subject_confidence}}

        exchange = Exchange(user_id=state.user_id, query=state.query, response=state.response)
        try:
            written = await self._call_external(
                "memory_write",
                self.memory.write(
                    state.conversation_id,
                    exchange,
                    topic.keywords[:MAX_MEMORY_TAGS],
                    prohibited=state.prohibit_memory_write,
                ),
            )
        except ExternalCallError:
            return {
                "failure_count": state.failure_count + 1,
                "metadata": {"memory_written": False, "subject_confidence": topic.subject_confidence},
            }
        return {"metadata": {"memory_written": bool(written), "subject_confidence": topic.subject_confidence}}

    async def _failure_recovery_node(self, state: ConversationState) -> Dict[str, Any]:
        return await self.recovery.recover(state)
