"""
Tests for best-effort context retrieval.
"""

import asyncio

from conftest import StaticKnowledgeStore
from retriever import ContextRetriever


class SlowKnowledgeStore:
    async def similarity_search(self, embedding, k):
        await asyncio.sleep(5)
        return []


async def test_results_are_sorted_and_filtered(config, llm):
    store = StaticKnowledgeStore([
        {"content": "low", "similarity": 0.2},
        {"content": "high", "similarity": 0.9},
        {"content": "", "similarity": 0.99},
        {"content": "mid", "similarity": 0.5},
    ])
    retriever = ContextRetriever(llm, store, config.model_copy(update={"retrieval_min_similarity": 0.3}))

    snippets = await retriever.retrieve("derivatives")

    assert [s["content"] for s in snippets] == ["high", "mid"]


async def test_no_store_means_no_context(config, llm):
    assert await ContextRetriever(llm, None, config).retrieve("derivatives") == []


async def test_failure_degrades_to_empty_and_reports(config, llm):
    reasons = []
    retriever = ContextRetriever(llm, StaticKnowledgeStore(error=RuntimeError("relation does not exist")), config)

    assert await retriever.retrieve("derivatives", on_error=reasons.append) == []
    assert reasons == ["relation does not exist"]


async def test_timeout_degrades_to_empty(config, llm):
    reasons = []
    retriever = ContextRetriever(llm, SlowKnowledgeStore(), config.model_copy(update={"retrieval_timeout": 0.1}))

    assert await retriever.retrieve("derivatives", on_error=reasons.append) == []
    assert "timed out" in reasons[0]
