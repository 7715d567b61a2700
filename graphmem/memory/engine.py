"""MemoryEngine: the library entry points, retrieve() and store().

Path selection per message:

- no prior turns for this session: full path (classify, then retrieval and
  storage concurrently, each under its own timeout);
- prior turns for the same session: follow-up path (one analysis call plus
  direct tool calls), falling back to the full path when the analysis is
  unusable.

Retrieval never raises to the caller: any failure yields an empty context.
Storage failures inside retrieve() are logged and the cycle is dropped.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from graphmem.constants import (
    ACTION_CLOSE_TAG,
    ACTION_OPEN_TAG,
    MEMORY_CLOSE_TAG,
    MEMORY_OPEN_TAG,
)
from graphmem.config.settings import get_settings
from graphmem.graph.database import create_db_engine, ensure_schema, make_session_factory
from graphmem.graph.store import GraphStore
from graphmem.infra.logging import bind_invocation, setup_logging
from graphmem.llm.embedding_client import OpenAICompatEmbeddingClient
from graphmem.llm.model_client import OpenAICompatModelClient
from graphmem.llm.usage import UsageTracker
from graphmem.memory.assembler import Assembler
from graphmem.memory.classifier import Classifier
from graphmem.memory.contracts import RetrievalResult, StoreResult
from graphmem.memory.curator import SectionCurator
from graphmem.memory.extraction import InstructionExtractor, StorageFilter
from graphmem.memory.follow_up import FollowUpPipeline
from graphmem.memory.planner import SearchPlanner
from graphmem.memory.prompts import NUDGE_STORE_TOOL_USE, NUDGE_TOOL_USE
from graphmem.memory.reconciler import Reconciler
from graphmem.memory.retrieval import RetrievalOrchestrator
from graphmem.memory.safety_nets import SafetyNets
from graphmem.memory.state import (
    ConversationStateStore,
    ConversationTurn,
    build_context_summary,
)
from graphmem.memory.storage import StorageOrchestrator, should_store
from graphmem.memory.tool_loop import ToolLoop
from graphmem.memory.trace import Trace, TraceWriter
from graphmem.tools.builtins import build_retrieve_registry, build_store_registry
from graphmem.tools.context import ToolContext

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from graphmem.config.settings import Settings
    from graphmem.llm.embedding_client import EmbeddingClient
    from graphmem.llm.model_client import ModelClient
    from graphmem.memory.contracts import Contradiction, StoreOutcome
    from graphmem.memory.schemas import Classification

logger = structlog.get_logger()


def render_contradiction(c: Contradiction) -> str:
    return (
        f"{ACTION_OPEN_TAG}\n"
        "A new instruction was stored that may conflict with an existing one:\n"
        f'- New: "{c.new_content}"\n'
        f'- Existing: "{c.old_content}"\n'
        f"Question: {c.question}\n"
        "Please ask the user to clarify.\n"
        f"{ACTION_CLOSE_TAG}"
    )


class MemoryEngine:
    def __init__(
        self,
        *,
        store: GraphStore,
        classifier: Classifier,
        retrieval: RetrievalOrchestrator,
        follow_up: FollowUpPipeline,
        storage: StorageOrchestrator,
        reconciler: Reconciler,
        state: ConversationStateStore,
        traces: TraceWriter,
        settings: Settings,
        usage: UsageTracker | None = None,
        closeables: list | None = None,
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._retrieval = retrieval
        self._follow_up = follow_up
        self._storage = storage
        self._reconciler = reconciler
        self._state = state
        self._traces = traces
        self._settings = settings
        self._usage = usage
        self._closeables = closeables or []
        self._db_engine = db_engine

    # ── construction ──

    @classmethod
    def build(
        cls,
        *,
        store: GraphStore,
        model_client: ModelClient,
        embedder: EmbeddingClient,
        settings: Settings,
        usage: UsageTracker | None = None,
        db_engine: AsyncEngine | None = None,
    ) -> MemoryEngine:
        """Wire every stage around one store, one model client and one embedder."""
        completion = settings.completion
        retrieval = settings.retrieval
        storage = settings.storage

        retrieve_registry = build_retrieve_registry(store, embedder, retrieval)
        store_registry = build_store_registry(store, embedder, retrieval)

        assembler = Assembler(store, retrieval)
        retrieval_orchestrator = RetrievalOrchestrator(
            SearchPlanner(
                model_client,
                model=completion.agent_model,
                temperature=retrieval.planner_temperature,
            ),
            ToolLoop(
                model_client,
                retrieve_registry,
                model=completion.agent_model,
                max_iterations=retrieval.max_tool_iterations,
                max_consecutive_errors=retrieval.max_consecutive_errors,
                max_result_chars=retrieval.max_result_chars,
                timeout_s=retrieval.tool_loop_timeout_s,
                nudge=NUDGE_TOOL_USE,
                tag="retrieve_loop",
            ),
            SafetyNets(store, embedder, retrieval),
            assembler,
            SectionCurator(
                model_client,
                model=completion.agent_model,
                temperature=retrieval.curation_temperature,
            ),
            max_turns=retrieval.max_tool_iterations,
        )
        storage_orchestrator = StorageOrchestrator(
            store,
            extractor=InstructionExtractor(
                model_client,
                model=completion.agent_model,
                temperature=completion.classifier_temperature,
            ),
            storage_filter=StorageFilter(
                model_client,
                model=completion.agent_model,
                temperature=completion.classifier_temperature,
            ),
            loop=ToolLoop(
                model_client,
                store_registry,
                model=completion.agent_model,
                max_iterations=storage.max_tool_iterations,
                max_consecutive_errors=retrieval.max_consecutive_errors,
                max_result_chars=retrieval.max_result_chars,
                timeout_s=storage.tool_loop_timeout_s,
                nudge=NUDGE_STORE_TOOL_USE,
                tag="store_loop",
            ),
            store_tool=store_registry.get("store_memory"),
            max_turns=storage.max_tool_iterations,
            match_chars=storage.force_store_match_chars,
        )
        return cls(
            store=store,
            classifier=Classifier(
                model_client,
                model=completion.classifier_model,
                temperature=completion.classifier_temperature,
                retry_temperature=completion.retry_temperature,
            ),
            retrieval=retrieval_orchestrator,
            follow_up=FollowUpPipeline(
                model_client,
                retrieve_registry,
                store,
                embedder,
                assembler,
                storage_orchestrator,
                retrieval,
                model=completion.agent_model,
                temperature=completion.classifier_temperature,
            ),
            storage=storage_orchestrator,
            reconciler=Reconciler(
                store,
                embedder,
                model_client,
                model=completion.agent_model,
                threshold=storage.reconcile_threshold,
                top_k=storage.reconcile_top_k,
                temperature=completion.classifier_temperature,
            ),
            state=ConversationStateStore(
                settings.memory.state_path, max_turns=settings.memory.max_turns
            ),
            traces=TraceWriter(settings.memory.debug_dir),
            settings=settings,
            usage=usage,
            closeables=[model_client, embedder],
            db_engine=db_engine,
        )

    @classmethod
    async def from_settings(
        cls, settings: Settings | None = None, *, configure_logging: bool = False
    ) -> MemoryEngine:
        """Create the SQLite store and OpenAI-compatible clients from configuration.

        Pass configure_logging=True when graphmem runs standalone; embedding
        applications usually own the structlog setup.
        """
        settings = settings or get_settings()
        if configure_logging:
            setup_logging(
                json_output=settings.logging.json_output, log_level=settings.logging.level
            )
        db_engine = await create_db_engine(settings.database)
        await ensure_schema(db_engine)
        usage = UsageTracker()
        completion = settings.completion
        model_client = OpenAICompatModelClient(
            api_key=completion.api_key,
            base_url=completion.base_url,
            timeout=completion.timeout_s,
            max_retries=completion.max_retries,
            base_delay=completion.base_delay_s,
            usage=usage,
        )
        embedding = settings.embedding
        embedder = OpenAICompatEmbeddingClient(
            api_key=embedding.api_key or completion.api_key,
            model=embedding.model,
            base_url=embedding.base_url or completion.base_url,
            dimensions=embedding.dimensions,
            batch_size=embedding.batch_size,
            timeout=embedding.timeout_s,
            max_retries=completion.max_retries,
            base_delay=completion.base_delay_s,
            usage=usage,
        )
        logger.info(
            "memory_engine_started",
            db_path=str(settings.database.path),
            classifier_model=completion.classifier_model,
            agent_model=completion.agent_model,
            embedding_model=embedding.model,
        )
        return cls.build(
            store=GraphStore(make_session_factory(db_engine)),
            model_client=model_client,
            embedder=embedder,
            settings=settings,
            usage=usage,
            db_engine=db_engine,
        )

    async def close(self) -> None:
        for resource in self._closeables:
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        if self._db_engine is not None:
            await self._db_engine.dispose()
        logger.info("memory_engine_closed")

    # ── entry points ──

    async def retrieve(
        self,
        session_id: str | None,
        message: str,
        *,
        conversation_context: str | None = None,
        source: str = "user",
    ) -> RetrievalResult:
        """Context for one incoming message, storing what it teaches along the way."""
        session_id = session_id or "main"
        with bind_invocation(session_id, "retrieve"):
            return await self._retrieve(session_id, message, conversation_context, source)

    async def _retrieve(
        self,
        session_id: str,
        message: str,
        conversation_context: str | None,
        source: str,
    ) -> RetrievalResult:
        start = time.monotonic()
        trace = Trace(operation="retrieve", session_id=session_id, prompt=message)
        tool_context = ToolContext(session_id=session_id, source=source)
        previous = self._state.turns_for(session_id)

        result: RetrievalResult | None = None
        if previous:
            result = await self._follow_up_path(message, previous, trace, tool_context)
        if result is None:
            result = await self._full_path(
                message, previous, trace, tool_context, conversation_context
            )

        result.timing["total_s"] = round(time.monotonic() - start, 3)
        trace.path = result.path
        trace.context = result.context
        trace.timing = result.timing
        trace.degraded.extend(result.degraded)
        trace.contradictions = [c.to_dict() for c in result.contradictions]
        trace.stored = [{"id": r.id, "type": r.type, "content": r.content} for r in result.stored]
        if self._usage is not None:
            trace.usage = self._usage.snapshot()
        self._traces.write(trace)

        logger.info(
            "memory_retrieved",
            session_id=session_id,
            path=result.path,
            context_chars=len(result.context),
            stored=len(result.stored),
            contradictions=len(result.contradictions),
            degraded=len(result.degraded),
            total_s=result.timing["total_s"],
        )
        return result

    async def store(
        self,
        session_id: str | None,
        message: str,
        classification: Classification,
        *,
        source: str = "user",
    ) -> StoreResult:
        """Storage and reconciliation only. Store-layer failures propagate."""
        if not should_store(classification):
            return StoreResult()
        session_id = session_id or "main"
        tool_context = ToolContext(session_id=session_id, source=source)
        try:
            with bind_invocation(session_id, "store"):
                outcome, contradictions = await asyncio.wait_for(
                    self._store_cycle(message, classification, tool_context),
                    timeout=self._settings.storage.timeout_s,
                )
        except TimeoutError:
            logger.warning("storage_timeout", session_id=session_id)
            return StoreResult()
        return StoreResult(stored=outcome.all_stored, contradictions=contradictions)

    @staticmethod
    def render_context(result: RetrievalResult) -> str:
        """Wrap the context and each contradiction in the hook delimiters."""
        parts = []
        if result.context:
            parts.append(f"{MEMORY_OPEN_TAG}\n{result.context}\n{MEMORY_CLOSE_TAG}")
        parts.extend(render_contradiction(c) for c in result.contradictions)
        return "\n".join(parts)

    # ── paths ──

    async def _full_path(
        self,
        message: str,
        previous: list[ConversationTurn],
        trace: Trace,
        tool_context: ToolContext,
        conversation_context: str | None,
    ) -> RetrievalResult:
        result = RetrievalResult(path="full")
        start = time.monotonic()
        classified, raw = await self._classifier.classify(message, context=conversation_context)
        classification = classified.value
        result.timing["classify_s"] = round(time.monotonic() - start, 3)
        if classified.degraded:
            result.degraded.append(classified.reason)
        trace.classification = classification.model_dump()
        trace.classifier_raw = raw
        result.entities = classification.entity_names

        if not classification.has_content:
            result.path = "none"
            self._remember(tool_context.session_id, previous, message, [], "")
            return result

        retrieval_task = (
            self._safe_retrieval(message, classification, tool_context)
            if classification.operations.retrieve
            else _nothing()
        )
        storage_task = (
            self._safe_store_cycle(message, classification, tool_context)
            if should_store(classification)
            else _nothing()
        )
        full, stored = await asyncio.gather(retrieval_task, storage_task)

        if full is not None:
            result.context = full.context
            result.search_plan = full.search_plan
            result.timing.update(full.timing)
            result.degraded.extend(full.degraded)
            trace.search_plan = full.search_plan.model_dump() if full.search_plan else None
            trace.add_turns("retrieve", full.turns)
        elif classification.operations.retrieve:
            result.degraded.append("retrieval failed or timed out")
        if stored is not None:
            outcome, contradictions = stored
            result.stored = outcome.all_stored
            result.contradictions = contradictions
            result.timing.update(outcome.timing)
            result.degraded.extend(outcome.degraded)
            trace.add_turns("store", outcome.turns)

        self._remember(
            tool_context.session_id, previous, message, result.entities, result.context
        )
        return result

    async def _follow_up_path(
        self,
        message: str,
        previous: list[ConversationTurn],
        trace: Trace,
        tool_context: ToolContext,
    ) -> RetrievalResult | None:
        """Returns None when the full path should run instead."""
        try:
            followed = await asyncio.wait_for(
                self._follow_up.run(message, previous, context=tool_context),
                timeout=self._settings.retrieval.timeout_s,
            )
        except TimeoutError:
            logger.warning("follow_up_timeout", session_id=tool_context.session_id)
            return self._follow_up_failed(message, previous, tool_context, "follow-up timed out")
        except Exception:
            logger.exception("follow_up_failed", session_id=tool_context.session_id)
            return self._follow_up_failed(message, previous, tool_context, "follow-up failed")

        if followed.value is None:
            logger.info("follow_up_fallback", reason=followed.reason)
            trace.degraded.append(followed.reason or "")
            return None

        outcome = followed.value
        result = RetrievalResult(
            context=outcome.context,
            path="follow_up",
            timing=dict(outcome.timing),
            entities=[e.name for e in outcome.decision.resolved_entities],
        )
        trace.add_turns("retrieve", outcome.turns)
        if outcome.store is not None:
            trace.add_turns("store", outcome.store.turns)
            result.stored = outcome.store.all_stored
            result.degraded.extend(outcome.store.degraded)
            try:
                reconciled = await self._reconciler.reconcile(result.stored)
                result.contradictions = reconciled.contradictions
            except Exception:
                logger.exception("reconcile_failed", session_id=tool_context.session_id)
                result.degraded.append("reconciliation failed")

        self._remember(
            tool_context.session_id, previous, message, result.entities, result.context
        )
        return result

    # ── helpers ──

    def _follow_up_failed(
        self,
        message: str,
        previous: list[ConversationTurn],
        tool_context: ToolContext,
        reason: str,
    ) -> RetrievalResult:
        self._remember(tool_context.session_id, previous, message, [], "")
        return RetrievalResult(path="follow_up", degraded=[reason])

    async def _store_cycle(
        self, message: str, classification: Classification, tool_context: ToolContext
    ) -> tuple[StoreOutcome, list[Contradiction]]:
        outcome = await self._storage.run(message, classification, context=tool_context)
        start = time.monotonic()
        reconciled = await self._reconciler.reconcile(outcome.all_stored)
        outcome.timing["reconcile_s"] = round(time.monotonic() - start, 3)
        return outcome, reconciled.contradictions

    async def _safe_store_cycle(
        self, message: str, classification: Classification, tool_context: ToolContext
    ) -> tuple[StoreOutcome, list[Contradiction]] | None:
        try:
            return await asyncio.wait_for(
                self._store_cycle(message, classification, tool_context),
                timeout=self._settings.storage.timeout_s,
            )
        except TimeoutError:
            logger.warning("storage_timeout", session_id=tool_context.session_id)
        except Exception:
            logger.exception("storage_failed", session_id=tool_context.session_id)
        return None

    async def _safe_retrieval(
        self, message: str, classification: Classification, tool_context: ToolContext
    ):
        try:
            return await asyncio.wait_for(
                self._retrieval.run(message, classification, context=tool_context),
                timeout=self._settings.retrieval.timeout_s,
            )
        except TimeoutError:
            logger.warning("retrieval_timeout", session_id=tool_context.session_id)
        except Exception:
            logger.exception("retrieval_failed", session_id=tool_context.session_id)
        return None

    def _remember(
        self,
        session_id: str | None,
        previous: list[ConversationTurn],
        message: str,
        entities: list[str],
        context: str,
    ) -> None:
        memory = self._settings.memory
        turn = ConversationTurn(
            prompt=message,
            entities=entities,
            context_summary=build_context_summary(
                context, max_lines=memory.summary_max_lines, max_chars=memory.summary_max_chars
            ),
        )
        try:
            self._state.append(session_id, previous, turn)
        except OSError as e:
            logger.warning("conversation_state_write_failed", error=str(e))


async def _nothing() -> None:
    return None
