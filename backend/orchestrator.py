"""
Content Orchestrator

Runs one request against the content graph and turns it into a single ordered
event stream:
- Resolves thread identity (new, continuing, or temporary when the store fails)
- Runs the compiled graph in a producer task, forwarding node events verbatim
- Applies state updates to the in-memory ThreadState and persists artifacts
- Falls back to single-call generation when configured or when the graph crashes

Collaborators (model, thread store, knowledge store, checkpointer) are injected,
so tests run the real graph against fakes.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, NamedTuple, Optional

from config import Settings
from events import Emit, error_event, status_event, thread_id_event
from fallback import run_single_call
from graph import ContentNodes, compile_content_graph
from llm import LanguageModel
from retriever import ContextRetriever, KnowledgeStore
from state import ContentSettings, is_error_text, make_message, settings_complete
from thread_store import (
    PERSISTENCE_WARNING,
    ThreadRecorder,
    ThreadStore,
    temporary_thread_id,
)

logger = logging.getLogger(__name__)

DEFAULT_USER = "anonymous"

_DONE = object()


class ImageInput(NamedTuple):
    base64: str
    content_type: str


def thread_title(prompt: str) -> str:
    prompt = prompt.strip()
    return f"{prompt[:30]}..." if len(prompt) > 30 else prompt


class ContentOrchestrator:
    def __init__(
        self,
        llm: LanguageModel,
        thread_store: Optional[ThreadStore],
        knowledge_store: Optional[KnowledgeStore],
        config: Settings,
        checkpointer=None,
    ):
        self.llm = llm
        self.thread_store = thread_store
        self.config = config
        retriever = ContextRetriever(llm, knowledge_store, config)
        self.graph = compile_content_graph(ContentNodes(llm, retriever, config), checkpointer)

    def stream(
        self,
        prompt: Optional[str],
        thread_id: Optional[str] = None,
        user_id: str = DEFAULT_USER,
        settings: Optional[dict] = None,
        image: Optional[ImageInput] = None,
    ) -> AsyncIterator[dict]:
        """Validate the request, then return the run's event stream."""
        if not prompt or not prompt.strip():
            raise ValueError("A prompt is required")
        return self._stream(prompt.strip(), thread_id, user_id, settings or {}, image)

    async def _stream(
        self,
        prompt: str,
        thread_id: Optional[str],
        user_id: str,
        settings: dict,
        image: Optional[ImageInput],
    ) -> AsyncIterator[dict]:
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(
            self._produce(queue.put_nowait, prompt, thread_id, user_id, settings, image)
        )
        producer.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            # Consumer gone (client disconnected): abandon in-flight model calls
            if not producer.done():
                logger.info("[Orchestrator] Stream closed early, cancelling run")
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass

    async def _produce(
        self,
        emit: Emit,
        prompt: str,
        thread_id: Optional[str],
        user_id: str,
        settings: dict,
        image: Optional[ImageInput],
    ) -> None:
        try:
            await self._run(emit, prompt, thread_id, user_id, settings, image)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Orchestrator] Run failed: {e}", exc_info=True)
            emit(error_event(f"An unexpected error occurred: {e}"))

    # ========================================================================
    # RUN
    # ========================================================================

    async def _run(
        self,
        emit: Emit,
        prompt: str,
        thread_id: Optional[str],
        user_id: str,
        settings: dict,
        image: Optional[ImageInput],
    ) -> None:
        thread_id = await self._resolve_thread(emit, thread_id, user_id, prompt, settings)
        recorder = ThreadRecorder(self.thread_store, thread_id)
        graph_config = {"configurable": {"thread_id": thread_id}}

        snapshot = await self.graph.aget_state(graph_config)
        previous: dict[str, Any] = dict(snapshot.values or {})

        seed: list[dict] = []
        if not previous.get("messages"):
            seed = await recorder.history()
            if seed:
                logger.info(f"[Orchestrator] Seeded {len(seed)} stored messages for thread {thread_id}")

        self._forward(emit, await recorder.append("user", prompt))

        request_text = prompt
        if image is not None:
            request_text = await self._with_image(emit, prompt, image)

        merged_settings = ContentSettings(**(previous.get("settings") or {})).merged_with(settings).model_dump()

        if self.config.pipeline_mode == "single_call" and settings_complete(merged_settings):
            history = (previous.get("messages") or seed) + [make_message("user", request_text)]
            await self._single_call(emit, recorder, request_text, merged_settings, history)
            return

        inputs = {
            "thread_id": thread_id,
            "user_input": request_text,
            "settings": merged_settings,
            "messages": seed + [make_message("user", request_text)],
            "context": [],
            "plan": None,
            "draft_content": None,
            "validation": None,
            "retry_count": 0,
            "final_content": None,
            "final_metadata": None,
        }
        state = {**previous, **inputs, "messages": (previous.get("messages") or []) + inputs["messages"]}

        try:
            async for mode, chunk in self.graph.astream(inputs, graph_config, stream_mode=["custom", "updates"]):
                if mode == "custom":
                    emit(chunk)
                    continue
                for node, delta in chunk.items():
                    if isinstance(delta, dict) or delta is None:
                        await self._apply(emit, recorder, state, node, delta or {})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Orchestrator] Graph run failed for thread {thread_id}: {e}", exc_info=True)
            emit(error_event(f"Content pipeline failed: {e}"))
            if (
                self.config.fallback_to_single_call
                and not state.get("final_content")
                and settings_complete(state.get("settings"))
            ):
                emit(status_event("Retrying in single-step mode..."))
                await self._single_call(
                    emit, recorder, state.get("request") or request_text, state["settings"], state["messages"]
                )
            return

        # The resolver completed the settings; single-call mode takes over from here
        if (
            self.config.pipeline_mode == "single_call"
            and not state.get("final_content")
            and not state.get("awaiting_clarification")
            and settings_complete(state.get("settings"))
        ):
            await self._single_call(
                emit, recorder, state.get("request") or request_text, state["settings"], state["messages"]
            )
            return

        logger.info(
            f"[Orchestrator] Run finished for thread {thread_id}: "
            f"final={'yes' if state.get('final_content') else 'no'}, retries={state.get('retry_count', 0)}"
        )

    async def _resolve_thread(
        self,
        emit: Emit,
        thread_id: Optional[str],
        user_id: str,
        prompt: str,
        settings: dict,
    ) -> str:
        if thread_id:
            return thread_id

        if self.thread_store is not None:
            try:
                new_id = await self.thread_store.create_thread(user_id, thread_title(prompt), settings)
                emit(thread_id_event(new_id))
                return new_id
            except Exception as e:
                logger.warning(f"[Orchestrator] Thread creation failed, using a temporary thread: {e}", exc_info=True)

        temp_id = temporary_thread_id()
        emit(thread_id_event(temp_id, temporary=True))
        emit(error_event(PERSISTENCE_WARNING))
        return temp_id

    async def _with_image(self, emit: Emit, prompt: str, image: ImageInput) -> str:
        emit(status_event("Reading attached image..."))
        try:
            transcription = await asyncio.wait_for(
                self.llm.read_image(image.base64, image.content_type),
                timeout=self.config.vision_timeout,
            )
        except Exception as e:
            logger.warning(f"[Orchestrator] Image transcription failed: {e}")
            emit(status_event("Could not read the attached image. Continuing with your text prompt."))
            return prompt
        if not transcription:
            emit(status_event("No readable content found in the attached image."))
            return prompt
        return f"{prompt}\n\n[Image content]\n{transcription}"

    # ========================================================================
    # STATE UPDATES AND PERSISTENCE
    # ========================================================================

    async def _apply(self, emit: Emit, recorder: ThreadRecorder, state: dict, node: str, delta: dict) -> None:
        previous_draft = state.get("draft_content")
        for key, value in delta.items():
            if key == "messages":
                state["messages"] = state.get("messages", []) + list(value)
            else:
                state[key] = value

        for message in delta.get("messages") or []:
            if message["role"] == "assistant":
                self._forward(emit, await recorder.append("assistant", message["content"]))

        if node == "planner" and not is_error_text(delta.get("plan")):
            self._forward(emit, await recorder.record_artifact("plan", delta["plan"]))
        elif node == "generator" and not is_error_text(delta.get("draft_content")):
            self._forward(emit, await recorder.record_artifact("draft", delta["draft_content"]))
        elif node == "validator" and delta.get("validation"):
            validation = delta["validation"]
            kind = "validation_error" if validation.get("status") == "validation_error" else "validation"
            self._forward(emit, await recorder.record_artifact(kind, json.dumps(validation, indent=2)))
        elif node == "refiner":
            refined = delta.get("draft_content")
            if refined != previous_draft and not is_error_text(refined):
                self._forward(
                    emit, await recorder.record_artifact("refined", refined, attempt=delta.get("retry_count"))
                )
        elif node == "formatter" and delta.get("final_content"):
            self._forward(emit, await recorder.record_artifact("final", delta["final_content"]))

    async def _single_call(
        self,
        emit: Emit,
        recorder: ThreadRecorder,
        request: str,
        settings: dict,
        history: list[dict],
    ) -> None:
        result = await run_single_call(self.llm, self.config, request, settings, history, emit)
        if result is None:
            return
        self._forward(emit, await recorder.append("assistant", result.chat))
        if result.content:
            self._forward(emit, await recorder.record_artifact("final", result.content))

    @staticmethod
    def _forward(emit: Emit, event: Optional[dict]) -> None:
        if event is not None:
            emit(event)
