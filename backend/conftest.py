"""
Shared fakes and fixtures for the backend test suite.

FakeLanguageModel routes each call to an agent role by recognizing the role's
prompt template, then replays scripted responses for that role.
"""

import asyncio
import json
from collections import defaultdict, deque
from typing import Iterable, Optional

import pytest

from config import Settings
from orchestrator import ContentOrchestrator
from thread_store import InMemoryThreadStore, StoreUnavailableError


COMPLETE_SETTINGS = {
    "content_type": "worksheet",
    "grade_level": "8",
    "length": "standard",
    "tone": "academic",
}

ROLE_MARKERS = {
    "settings": "gather specific requirements",
    "planner": "planning content based on teacher requirements",
    "validator": "mathematics validation expert",
    "single_call": "Respond to the teacher's request in two parts",
    "chat": "confirming the details before content generation",
    "generator": "You are a math teacher creating educational content",
    "refiner": "refining draft content based on validation feedback",
}

VALID = json.dumps({"status": "valid", "errors": [], "suggestions": []})
ERRORS_FOUND = json.dumps({
    "status": "errors_found",
    "errors": [{"detail": "2 + 2 is not 5", "location": "Question 1", "correction": "2 + 2 = 4"}],
    "suggestions": [],
})


class Stall:
    """Stream script that yields some chunks, then never produces another."""

    def __init__(self, *chunks: str):
        self.chunks = chunks


class Slow:
    """Stream script that yields each chunk after a fixed delay."""

    def __init__(self, delay: float, *chunks: str):
        self.delay = delay
        self.chunks = chunks


DEFAULTS = {
    "settings": json.dumps({
        "updated_settings": {},
        "is_complete": False,
        "clarifying_question": "What grade level are your students?",
    }),
    "planner": "# Plan\n1. Objectives\n2. Practice problems",
    "validator": VALID,
    "single_call": "# Chat Response\nHappy to help!\n\n# Worksheet Content\n## Fractions\n1. 1/2 + 1/4 = 3/4",
    "chat": ["Great, ", "starting on your grade 8 worksheet now."],
    "generator": ["# Worksheet\n", "1. $2 + 2 = 4$"],
    "refiner": ["# Worksheet\n", "1. $2 + 2 = 4$ (corrected)"],
}


def prompt_text(prompt) -> str:
    if isinstance(prompt, str):
        return prompt
    return "\n".join(str(getattr(m, "content", m)) for m in prompt)


class FakeLanguageModel:
    def __init__(self, image_text: Optional[str] = "Solve $x + 3 = 5$", embedding=None):
        self.scripts: dict[str, deque] = defaultdict(deque)
        self.calls: list[str] = []
        self.prompts: dict[str, list[str]] = defaultdict(list)
        self.image_text = image_text
        self.embedding = embedding or [0.1, 0.2, 0.3]

    def script(self, role: str, *responses) -> "FakeLanguageModel":
        """Queue responses for a role. The last queued response repeats."""
        self.scripts[role].extend(responses)
        return self

    def count(self, role: str) -> int:
        return self.calls.count(role)

    def _role(self, prompt) -> str:
        text = prompt_text(prompt)
        for role, marker in ROLE_MARKERS.items():
            if marker in text:
                return role
        raise AssertionError(f"Unrecognized prompt: {text[:80]}")

    def _next(self, prompt):
        role = self._role(prompt)
        self.calls.append(role)
        self.prompts[role].append(prompt_text(prompt))
        queue = self.scripts[role]
        if not queue:
            return DEFAULTS[role]
        return queue.popleft() if len(queue) > 1 else queue[0]

    async def generate(self, prompt, *, temperature: float, model: Optional[str] = None) -> str:
        response = self._next(prompt)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Slow):
            await asyncio.sleep(response.delay)
            return "".join(response.chunks)
        return response

    async def generate_structured(self, prompt, schema, *, temperature: float, model: Optional[str] = None):
        """Scripted responses are the model's JSON payload, parsed into `schema` like a tool call."""
        response = self._next(prompt)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Slow):
            await asyncio.sleep(response.delay)
            response = "".join(response.chunks)
        if isinstance(response, schema):
            return response
        return schema.model_validate_json(response)

    async def generate_stream(self, prompt, *, temperature: float, model: Optional[str] = None):
        response = self._next(prompt)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, Stall):
            for chunk in response.chunks:
                yield chunk
            await asyncio.sleep(3600)
            return
        if isinstance(response, Slow):
            for chunk in response.chunks:
                await asyncio.sleep(response.delay)
                yield chunk
            return
        chunks: Iterable[str] = [response] if isinstance(response, str) else response
        for chunk in chunks:
            yield chunk

    async def embed(self, text: str) -> list[float]:
        return self.embedding

    async def read_image(self, image_base64: str, content_type: str) -> str:
        if self.image_text is None:
            raise RuntimeError("vision model unavailable")
        return self.image_text


class FailingThreadStore:
    """Thread store whose every call fails."""

    def __init__(self):
        self.calls = 0

    async def create_thread(self, user_id: str, title: str, settings_seed: dict) -> str:
        self.calls += 1
        raise StoreUnavailableError("database is down")

    async def append(self, thread_id: str, role: str, content: str) -> None:
        self.calls += 1
        raise StoreUnavailableError("database is down")

    async def list(self, thread_id: str):
        self.calls += 1
        raise StoreUnavailableError("database is down")


class StaticKnowledgeStore:
    def __init__(self, snippets: Optional[list[dict]] = None, error: Optional[Exception] = None):
        self.snippets = snippets or []
        self.error = error

    async def similarity_search(self, embedding: list[float], k: int) -> list[dict]:
        if self.error is not None:
            raise self.error
        return self.snippets[:k]


async def collect(stream) -> list[dict]:
    return [event async for event in stream]


def event_types(events: list[dict], include_status: bool = False) -> list[str]:
    return [e["type"] for e in events if include_status or e["type"] != "status"]


@pytest.fixture
def config() -> Settings:
    return Settings(
        _env_file=None,
        google_api_key="test-key",
        settings_timeout=2,
        chat_timeout=2,
        planner_timeout=2,
        generation_timeout=2,
        generation_stall_timeout=0.3,
        validation_timeout=2,
        refinement_timeout=2,
        refinement_stall_timeout=0.3,
        retrieval_timeout=1,
        vision_timeout=1,
        pipeline_mode="graph",
        fallback_to_single_call=True,
    )


@pytest.fixture
def llm() -> FakeLanguageModel:
    return FakeLanguageModel()


@pytest.fixture
def store() -> InMemoryThreadStore:
    return InMemoryThreadStore()


@pytest.fixture
def make_orchestrator(config, llm, store):
    def factory(llm=llm, store=store, knowledge=None, config=config, checkpointer=None):
        return ContentOrchestrator(
            llm=llm,
            thread_store=store,
            knowledge_store=knowledge,
            config=config,
            checkpointer=checkpointer,
        )
    return factory
