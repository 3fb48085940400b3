"""
Single-call degraded mode.

One model call produces both the conversational reply and the content, split on
the "# Chat Response" / "# ... Content" headings. There is no planning and no
validation, so results are always reported as unvalidated. Used when the graph
pipeline is disabled by configuration or crashes before producing content.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from config import Settings
from events import Emit, chat_event, error_event, final_content_event, status_event
from llm import LanguageModel
from prompts import SINGLE_CALL_PROMPT, format_history
from state import require_complete

logger = logging.getLogger(__name__)

UNVALIDATED_NOTE = "\n\n<hr/>\n_Generated in single-step mode. This content was not validated. Please review carefully._"

_CHAT_SECTION = re.compile(r"# Chat Response\s+(.*?)(?=^# )", re.DOTALL | re.MULTILINE)
_CONTENT_SECTION = re.compile(r"^# [^\n]* Content[ \t]*\n(.*)$", re.DOTALL | re.MULTILINE)


class SingleCallResult(NamedTuple):
    chat: str
    content: str
    raw: str


def split_response(raw: str) -> tuple[str, str]:
    """Return (chat, content). Unstructured output is treated as chat only."""
    chat_match = _CHAT_SECTION.search(raw)
    content_match = _CONTENT_SECTION.search(raw)
    chat = chat_match.group(1).strip() if chat_match else raw.strip()
    content = content_match.group(1).strip() if content_match else ""
    return chat, content


async def run_single_call(
    llm: LanguageModel,
    config: Settings,
    request: str,
    settings: Optional[dict],
    history: list[dict],
    emit: Emit,
) -> Optional[SingleCallResult]:
    """
    Emit chat and final_content events for one combined call. Returns None on
    failure. Raises SettingsIncompleteError for incomplete settings.
    """
    effective = require_complete(settings)
    emit(status_event("Generating response in single-step mode...", current_step=1))

    prompt = SINGLE_CALL_PROMPT.format_messages(
        content_title=effective.content_type.title(),
        history=format_history(history),
        request=request,
        **effective.model_dump(),
    )
    try:
        raw = await asyncio.wait_for(
            llm.generate(prompt, temperature=config.generator_temperature, model=config.generator_model),
            timeout=config.generation_timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"[SingleCall] Timed out after {config.generation_timeout}s")
        emit(error_event("Content generation timed out. Please try again with a simpler request."))
        return None
    except Exception as e:
        logger.error(f"[SingleCall] Error: {e}", exc_info=True)
        emit(error_event(f"Content generation failed: {e}"))
        return None

    chat, content = split_response(raw)
    emit(chat_event(chat, is_complete=True))

    if not content:
        logger.warning("[SingleCall] Response had no content section")
        emit(status_event("No content section in response."))
        return SingleCallResult(chat=chat, content="", raw=raw)

    metadata = {
        "contentType": effective.content_type,
        "gradeLevel": effective.grade_level,
        "length": effective.length,
        "tone": effective.tone,
        "validationStatus": "unvalidated",
        "validationErrors": [],
        "retryCount": 0,
        "mode": "single_call",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    text = content + UNVALIDATED_NOTE
    emit(final_content_event(text, metadata))
    return SingleCallResult(chat=chat, content=text, raw=raw)
