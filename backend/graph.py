"""
LangGraph Workflow for the Content Generation Engine

This module implements the agentic workflow with:
- A settings gate that ends the run with a clarifying question when settings are incomplete
- A linear content pipeline: acknowledgment, retrieval, planning, streamed generation
- A bounded validate/refine loop (at most 3 refiner passes)
- Node guards that turn any uncaught exception into an error event plus a safe fallback value
"""

import functools
import logging
from typing import Callable, Literal, Optional

from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver
from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph
from psycopg_pool import AsyncConnectionPool

from chat_responder import respond
from config import Settings
from events import (
    Emit,
    chat_event,
    context_event,
    error_event,
    final_content_event,
    status_event,
)
from formatter import format_content
from generator import generate_content, refine_content
from llm import LanguageModel
from planner import plan_content
from retriever import ContextRetriever
from settings_resolver import resolve_settings
from state import (
    ERROR_PREFIX,
    GraphState,
    ValidationResult,
    make_message,
    settings_complete,
)
from validator import validate_content

logger = logging.getLogger(__name__)

MAX_REFINEMENTS = 3


# ============================================================================
# CONDITIONAL EDGE FUNCTIONS
# ============================================================================

def decide_settings_path(state: GraphState, handoff: bool = False) -> Literal["clarify", "complete", "handoff"]:
    """
    Downstream agents only run when the resolver and the deterministic check agree.
    With `handoff`, complete settings end the graph so the caller can answer in
    single-call mode.
    """
    if state.get("settings_complete") and settings_complete(state.get("settings")):
        return "handoff" if handoff else "complete"
    return "clarify"


def decide_validation_path(state: GraphState, limit: int = MAX_REFINEMENTS) -> Literal["refiner", "formatter"]:
    """
    Pure in (validation.status, retry_count). retry_count only grows, so the
    refiner runs at most `limit` times.
    """
    validation = state.get("validation")
    retry_count = state.get("retry_count", 0)
    limit = min(limit, MAX_REFINEMENTS)

    if not validation:
        logger.warning("[DecideValidationPath] Validation result missing, proceeding to formatter")
        return "formatter"

    status = validation.get("status")
    if status == "errors_found" and retry_count < limit:
        logger.info(f"[DecideValidationPath] → REFINER (retry_count={retry_count})")
        return "refiner"

    if status == "errors_found":
        logger.warning(f"[DecideValidationPath] Max refinements ({retry_count}) reached, formatting despite errors")
    else:
        logger.info(f"[DecideValidationPath] → FORMATTER (status={status})")
    return "formatter"


# ============================================================================
# NODE GUARD
# ============================================================================

def _writer() -> Emit:
    return get_stream_writer()


def guarded(node_name: str, fallback: Callable[[GraphState, Exception, Emit], dict]):
    """Catch node exceptions, emit an error event and return the node's fallback delta."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, state: GraphState) -> dict:
            try:
                return await fn(self, state)
            except Exception as e:
                logger.error(f"[{node_name}] Unhandled error: {e}", exc_info=True)
                emit = _writer()
                emit(error_event(f"{node_name} failed: {e}"))
                return fallback(state, e, emit)
        return wrapper
    return decorator


def _settings_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    return {"settings_complete": False, "awaiting_clarification": True}


def _no_update(state: GraphState, exc: Exception, emit: Emit) -> dict:
    return {}


def _context_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    return {"context": []}


def _plan_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    return {"plan": f"{ERROR_PREFIX} Content planning failed. {exc}"}


def _draft_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    return {"draft_content": f"{ERROR_PREFIX} Content generation failed. {exc}"}


def _validation_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    result = ValidationResult.failure(str(exc) or "Validation process failed", location="Validator Node")
    return {"validation": result.model_dump()}


def _refiner_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    # An entered refiner pass always counts, even when it crashes
    if (state.get("validation") or {}).get("status") == "errors_found":
        return {"retry_count": state.get("retry_count", 0) + 1}
    return {}


def _formatter_fallback(state: GraphState, exc: Exception, emit: Emit) -> dict:
    text = f"{ERROR_PREFIX} Formatting failed ({exc}).\n\n---\n\n{state.get('draft_content') or ''}"
    metadata = {"validationStatus": (state.get("validation") or {}).get("status", "unknown")}
    emit(final_content_event(text, metadata))
    return {"final_content": text, "final_metadata": metadata}


# ============================================================================
# NODES
# ============================================================================

class ContentNodes:
    """Graph nodes bound to their collaborators (model, retriever, config)."""

    def __init__(self, llm: LanguageModel, retriever: ContextRetriever, config: Settings):
        self.llm = llm
        self.retriever = retriever
        self.config = config

    @guarded("Settings Resolver", _settings_fallback)
    async def settings_resolver(self, state: GraphState) -> dict:
        emit = _writer()
        emit(status_event("Analyzing your request...", current_step=0))

        user_input = state.get("user_input", "")
        # A clarification answer continues the request that prompted the question
        if state.get("awaiting_clarification") and state.get("request"):
            request = state["request"]
        else:
            request = user_input

        resolution = await resolve_settings(
            self.llm,
            self.config,
            state.get("settings"),
            latest_message=user_input,
            history=state.get("messages", []),
        )
        update = {
            "settings": resolution.updated_settings.model_dump(),
            "settings_complete": resolution.is_complete,
            "awaiting_clarification": not resolution.is_complete,
            "request": request,
        }
        if resolution.error:
            emit(error_event(resolution.error))
        if not resolution.is_complete:
            emit(chat_event(resolution.clarifying_question, is_complete=True))
            update["messages"] = [make_message("assistant", resolution.clarifying_question)]
        return update

    @guarded("Chat Responder", _no_update)
    async def chat_responder(self, state: GraphState) -> dict:
        text = await respond(self.llm, self.config, state.get("request", ""), state.get("settings"), _writer())
        return {"messages": [make_message("assistant", text)]}

    @guarded("Context Retriever", _context_fallback)
    async def context_retriever(self, state: GraphState) -> dict:
        emit = _writer()
        emit(status_event("Retrieving relevant context...", current_step=1))
        snippets = await self.retriever.retrieve(
            state.get("request", ""),
            on_error=lambda reason: emit(
                status_event(f"Reference material unavailable ({reason}). Continuing without it.", current_step=1)
            ),
        )
        emit(context_event(snippets))
        return {"context": snippets}

    @guarded("Planner", _plan_fallback)
    async def planner(self, state: GraphState) -> dict:
        plan = await plan_content(
            self.llm,
            self.config,
            state.get("request", ""),
            state.get("settings"),
            state.get("context") or [],
            _writer(),
        )
        return {"plan": plan}

    @guarded("Generator", _draft_fallback)
    async def generator(self, state: GraphState) -> dict:
        draft = await generate_content(self.llm, self.config, state.get("plan"), state.get("settings"), _writer())
        return {"draft_content": draft}

    @guarded("Validator", _validation_fallback)
    async def validator(self, state: GraphState) -> dict:
        result = await validate_content(
            self.llm, self.config, state.get("draft_content"), state.get("settings"), _writer()
        )
        return {"validation": result.model_dump()}

    @guarded("Refiner", _refiner_fallback)
    async def refiner(self, state: GraphState) -> dict:
        refinement = await refine_content(
            self.llm,
            self.config,
            state.get("draft_content"),
            state.get("validation"),
            state.get("retry_count", 0),
            _writer(),
        )
        if refinement.skipped:
            return {}
        return {"draft_content": refinement.content, "retry_count": refinement.retry_count}

    @guarded("Formatter", _formatter_fallback)
    async def formatter(self, state: GraphState) -> dict:
        emit = _writer()
        emit(status_event("Formatting final content...", current_step=3))
        formatted = format_content(
            state.get("draft_content"),
            state.get("settings"),
            state.get("validation"),
            state.get("retry_count", 0),
            request=state.get("request", ""),
            refinement_limit=min(self.config.max_refinements, MAX_REFINEMENTS),
        )
        metadata = dict(formatted.metadata)
        metadata["contextSources"] = [
            {"similarity": round(s["similarity"], 4), "excerpt": s["content"][:200]}
            for s in (state.get("context") or [])
        ]
        logger.info(f"[Formatter] Final content: {formatted.text[:150]}...")
        emit(final_content_event(formatted.text, metadata))
        return {"final_content": formatted.text, "final_metadata": metadata}


# ============================================================================
# GRAPH CONSTRUCTION
# ============================================================================

def build_content_graph(nodes: ContentNodes) -> StateGraph:
    workflow = StateGraph(GraphState)

    workflow.add_node("settings_resolver", nodes.settings_resolver)
    workflow.add_node("chat_responder", nodes.chat_responder)
    workflow.add_node("context_retriever", nodes.context_retriever)
    workflow.add_node("planner", nodes.planner)
    workflow.add_node("generator", nodes.generator)
    workflow.add_node("validator", nodes.validator)
    workflow.add_node("refiner", nodes.refiner)
    workflow.add_node("formatter", nodes.formatter)

    workflow.add_edge(START, "settings_resolver")

    # Incomplete settings end the run; the next user turn re-enters the resolver
    handoff = nodes.config.pipeline_mode == "single_call"
    workflow.add_conditional_edges(
        "settings_resolver",
        lambda state: decide_settings_path(state, handoff),
        {"clarify": END, "complete": "chat_responder", "handoff": END}
    )

    workflow.add_edge("chat_responder", "context_retriever")
    workflow.add_edge("context_retriever", "planner")
    workflow.add_edge("planner", "generator")
    workflow.add_edge("generator", "validator")

    limit = nodes.config.max_refinements
    workflow.add_conditional_edges(
        "validator",
        lambda state: decide_validation_path(state, limit),
        {"refiner": "refiner", "formatter": "formatter"}
    )
    workflow.add_edge("refiner", "validator")
    workflow.add_edge("formatter", END)

    return workflow


def compile_content_graph(nodes: ContentNodes, checkpointer=None):
    return build_content_graph(nodes).compile(checkpointer=checkpointer or MemorySaver())


async def open_pool(database_url: str, timeout: float = 5.0) -> Optional[AsyncConnectionPool]:
    """Open the shared Postgres pool, or return None when the database is unreachable."""
    pool = AsyncConnectionPool(
        conninfo=database_url,
        max_size=20,
        kwargs={"autocommit": True, "prepare_threshold": 0},
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=timeout)
    except Exception as e:
        logger.warning(f"Postgres unavailable ({e}), persistence will run in memory")
        await pool.close()
        return None
    return pool


async def create_checkpointer(pool: Optional[AsyncConnectionPool]):
    """Postgres checkpointer when the pool is usable, in-process MemorySaver otherwise."""
    if pool is None:
        logger.warning("No database pool, using in-memory graph checkpoints")
        return MemorySaver()
    try:
        checkpointer = AsyncPostgresSaver(pool)
        await checkpointer.setup()
        return checkpointer
    except Exception as e:
        logger.warning(f"Postgres checkpointer unavailable ({e}), using in-memory graph checkpoints")
        return MemorySaver()
