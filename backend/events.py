"""
Wire events for the outbound chat stream.

Every event is a plain JSON-serializable dict tagged by "type". Keys use the
camelCase names the browser client consumes.
"""

import json
from typing import Any, Callable, Optional


# Agents report progress through an emit callback; graph nodes bind it to the stream writer
Emit = Callable[[dict], None]


def thread_id_event(thread_id: str, temporary: bool = False) -> dict:
    event = {"type": "threadId", "threadId": thread_id}
    if temporary:
        event["temporary"] = True
    return event


def status_event(message: str, current_step: Optional[int] = None) -> dict:
    event = {"type": "status", "message": message}
    if current_step is not None:
        event["currentStep"] = current_step
    return event


def chat_event(content: str, is_complete: Optional[bool] = None) -> dict:
    event = {"type": "chat", "content": content}
    if is_complete is not None:
        event["isComplete"] = is_complete
    return event


def context_event(snippets: list[dict]) -> dict:
    """Summary of retrieved context. Raw snippets stay in artifact metadata."""
    return {
        "type": "context",
        "count": len(snippets),
        "topSimilarity": max((s.get("similarity", 0.0) for s in snippets), default=None),
    }


def preview_stream_start() -> dict:
    return {"type": "preview_stream_start"}


def preview_stream_chunk(content: str) -> dict:
    return {"type": "preview_stream_chunk", "content": content}


def preview_stream_end() -> dict:
    return {"type": "preview_stream_end"}


def preview_update_event(content: str, attempt: int) -> dict:
    return {"type": "preview_update", "content": content, "attempt": attempt}


def validation_result_event(validation: dict) -> dict:
    return {"type": "validation_result", "validation": validation}


def final_content_event(content: str, metadata: dict) -> dict:
    return {"type": "final_content", "content": content, "metadata": metadata}


def error_event(message: str) -> dict:
    return {"type": "error", "message": message}


def encode_sse(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"
