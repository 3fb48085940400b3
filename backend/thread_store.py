"""
Thread Store

Durable, append-only conversation log keyed by thread id. The store itself is an
external collaborator (Postgres in production, in-memory for development and
tests); ThreadRecorder holds the per-run policy of what is written, when, and
what happens when the store is unavailable.
"""

import logging
import uuid
from collections import defaultdict
from typing import Optional, Protocol

from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from events import error_event
from state import ThreadMessage, make_message

logger = logging.getLogger(__name__)

TEMP_PREFIX = "temp-"

PERSISTENCE_WARNING = "Your conversation history is not being saved right now. Content generation will continue."


class StoreUnavailableError(Exception):
    """The thread store could not complete an operation."""


def is_temporary(thread_id: str) -> bool:
    return thread_id.startswith(TEMP_PREFIX)


def temporary_thread_id() -> str:
    return f"{TEMP_PREFIX}{uuid.uuid4()}"


class ThreadStore(Protocol):
    async def create_thread(self, user_id: str, title: str, settings_seed: dict) -> str: ...

    async def append(self, thread_id: str, role: str, content: str) -> None: ...

    async def list(self, thread_id: str) -> list[ThreadMessage]: ...


# ============================================================================
# BACKENDS
# ============================================================================

class PostgresThreadStore:
    """Threads and messages tables in Postgres, accessed through an async pool."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def setup(self) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS threads (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    settings JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id BIGSERIAL PRIMARY KEY,
                    thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS messages_thread_idx ON messages (thread_id, id)"
            )
        logger.info("Thread store tables ready")

    async def create_thread(self, user_id: str, title: str, settings_seed: dict) -> str:
        thread_id = str(uuid.uuid4())
        try:
            async with self.pool.connection() as conn:
                await conn.execute(
                    "INSERT INTO threads (id, user_id, title, settings) VALUES (%s, %s, %s, %s)",
                    (thread_id, user_id, title, Jsonb(settings_seed)),
                )
        except Exception as e:
            raise StoreUnavailableError(f"Failed to create thread: {e}") from e
        return thread_id

    async def append(self, thread_id: str, role: str, content: str) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute(
                    "INSERT INTO messages (thread_id, role, content) VALUES (%s, %s, %s)",
                    (thread_id, role, content),
                )
                await conn.execute("UPDATE threads SET updated_at = now() WHERE id = %s", (thread_id,))
        except Exception as e:
            raise StoreUnavailableError(f"Failed to save message: {e}") from e

    async def list(self, thread_id: str) -> list[ThreadMessage]:
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        "SELECT role, content, created_at FROM messages WHERE thread_id = %s ORDER BY id",
                        (thread_id,),
                    )
                    rows = await cur.fetchall()
        except Exception as e:
            raise StoreUnavailableError(f"Failed to load messages: {e}") from e
        return [
            {"role": role, "content": content, "created_at": created_at.isoformat()}
            for role, content, created_at in rows
        ]


class InMemoryThreadStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self.threads: dict[str, dict] = {}
        self.messages: dict[str, list[ThreadMessage]] = defaultdict(list)

    async def create_thread(self, user_id: str, title: str, settings_seed: dict) -> str:
        thread_id = str(uuid.uuid4())
        self.threads[thread_id] = {"user_id": user_id, "title": title, "settings": dict(settings_seed)}
        return thread_id

    async def append(self, thread_id: str, role: str, content: str) -> None:
        if thread_id not in self.threads:
            raise StoreUnavailableError(f"Unknown thread {thread_id}")
        self.messages[thread_id].append(make_message(role, content))

    async def list(self, thread_id: str) -> list[ThreadMessage]:
        return list(self.messages.get(thread_id, []))


# ============================================================================
# PERSISTENCE POLICY
# ============================================================================

ARTIFACT_LABELS = {
    "plan": "[Content Plan]",
    "draft": "[Draft Content]",
    "validation": "[Validation Results]",
    "validation_error": "[Validation Error]",
    "final": "[Final Formatted Content]",
}


class ThreadRecorder:
    """
    Per-run writer for one thread.

    Temporary threads are never read or written. The first store failure logs,
    switches the recorder into degraded mode and returns a single error event
    for the caller to forward; every later write is skipped silently.
    """

    def __init__(self, store: Optional[ThreadStore], thread_id: str):
        self.store = store
        self.thread_id = thread_id
        self.degraded = store is None or is_temporary(thread_id)
        self._warned = False

    async def append(self, role: str, content: str) -> Optional[dict]:
        if role not in ("user", "assistant"):
            raise ValueError(f"Refusing to store message with role {role!r}")
        if self.degraded:
            return None
        try:
            await self.store.append(self.thread_id, role, content)
        except Exception as e:
            return self._degrade(e)
        return None

    async def record_artifact(self, kind: str, content: str, attempt: Optional[int] = None) -> Optional[dict]:
        if kind == "refined":
            label = f"[Refined Content - Attempt {attempt}]"
        else:
            label = ARTIFACT_LABELS[kind]
        return await self.append("assistant", f"{label}\n{content}")

    async def history(self) -> list[ThreadMessage]:
        if self.degraded:
            return []
        try:
            return await self.store.list(self.thread_id)
        except Exception as e:
            # Reads failing do not stop writes from being attempted
            logger.warning(f"[ThreadRecorder] Could not load history for {self.thread_id}: {e}")
            return []

    def _degrade(self, exc: Exception) -> Optional[dict]:
        self.degraded = True
        logger.warning(
            f"[ThreadRecorder] Persistence failed for thread {self.thread_id}, continuing without saving",
            exc_info=exc,
        )
        if self._warned:
            return None
        self._warned = True
        return error_event(PERSISTENCE_WARNING)
