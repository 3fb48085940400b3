"""
Chat Responder

Streams a short conversational acknowledgment once settings are complete. The
acknowledgment is best-effort: failures produce an error event and a fixed
apology, and the content pipeline continues regardless.
"""

import logging

from config import Settings
from events import Emit, chat_event, error_event
from llm import LanguageModel
from prompts import CHAT_RESPONDER_PROMPT
from state import require_complete
from streaming import with_stall_timeout

logger = logging.getLogger(__name__)

ACK_FALLBACK = "I apologize, but I encountered an error confirming the details. I'm starting on your content now."


async def respond(
    llm: LanguageModel,
    config: Settings,
    request: str,
    settings: dict,
    emit: Emit,
) -> str:
    """Stream the acknowledgment as partial chat events; return the full text."""
    confirmed = require_complete(settings)

    prompt = CHAT_RESPONDER_PROMPT.format_messages(request=request, **confirmed.model_dump())
    parts: list[str] = []
    try:
        stream = llm.generate_stream(prompt, temperature=config.chat_temperature, model=config.chat_model)
        async for chunk in with_stall_timeout(
            stream,
            inactivity_limit=config.chat_timeout / 2,
            overall_limit=config.chat_timeout,
        ):
            parts.append(chunk)
            emit(chat_event(chunk, is_complete=False))
        text = "".join(parts).strip()
        if not text:
            raise ValueError("Empty acknowledgment from model")
    except Exception as e:
        logger.error(f"[ChatResponder] Error: {e}")
        emit(error_event(f"Chat response failed: {e}"))
        text = ACK_FALLBACK

    emit(chat_event(text, is_complete=True))
    return text
