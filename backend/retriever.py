"""
Context Retriever

Embeds the user query and runs a similarity search against the knowledge store.
Retrieval is best-effort: any failure degrades to an empty context and never
aborts the run.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

from psycopg_pool import AsyncConnectionPool

from config import Settings
from llm import LanguageModel

logger = logging.getLogger(__name__)


class KnowledgeStore(Protocol):
    async def similarity_search(self, embedding: list[float], k: int) -> list[dict]: ...


class PgVectorKnowledgeStore:
    """Knowledge snippets in a pgvector `documents` table, ranked by cosine similarity."""

    def __init__(self, pool: AsyncConnectionPool, table: str = "documents"):
        self.pool = pool
        self.table = table

    async def similarity_search(self, embedding: list[float], k: int) -> list[dict]:
        vector_literal = "[" + ",".join(str(x) for x in embedding) + "]"
        query = (
            f"SELECT content, 1 - (embedding <=> %s::vector) AS similarity "
            f"FROM {self.table} ORDER BY embedding <=> %s::vector LIMIT %s"
        )
        async with self.pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, (vector_literal, vector_literal, k))
                rows = await cur.fetchall()
        return [{"content": row[0], "similarity": float(row[1])} for row in rows]


class ContextRetriever:
    def __init__(
        self,
        llm: LanguageModel,
        store: Optional[KnowledgeStore],
        config: Settings,
    ):
        self.llm = llm
        self.store = store
        self.config = config

    async def retrieve(
        self,
        query_text: str,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> list[dict]:
        """Return ranked [{content, similarity}] snippets; [] on any failure."""
        if self.store is None or not query_text.strip():
            return []
        try:
            return await asyncio.wait_for(self._search(query_text), timeout=self.config.retrieval_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self.config.retrieval_timeout}s"
        except Exception as e:
            reason = str(e) or type(e).__name__
        logger.warning(f"[ContextRetriever] Retrieval failed: {reason}")
        if on_error is not None:
            on_error(reason)
        return []

    async def _search(self, query_text: str) -> list[dict]:
        embedding = await self.llm.embed(query_text)
        matches = await self.store.similarity_search(embedding, self.config.retrieval_match_count)
        snippets = [
            {"content": str(m["content"]), "similarity": float(m.get("similarity", 0.0))}
            for m in matches
            if m.get("content")
        ]
        snippets = [s for s in snippets if s["similarity"] >= self.config.retrieval_min_similarity]
        snippets.sort(key=lambda s: s["similarity"], reverse=True)
        logger.info(f"[ContextRetriever] Retrieved {len(snippets)} snippets")
        return snippets
