"""
Content Generator and Refiner

Both steps stream model output token-by-token through with_stall_timeout and
bracket the stream with preview_stream_start / preview_stream_end. The end
event always fires, whether generation succeeded, timed out or stalled.
"""

import json
import logging
from typing import NamedTuple, Optional

from config import Settings
from events import (
    Emit,
    error_event,
    preview_stream_chunk,
    preview_stream_end,
    preview_stream_start,
    preview_update_event,
    status_event,
)
from llm import LanguageModel
from prompts import GENERATOR_PROMPT, REFINER_PROMPT
from state import ERROR_PREFIX, is_error_text, require_complete
from streaming import GenerationStalled, GenerationTimeout, with_stall_timeout

logger = logging.getLogger(__name__)

PROGRESS_EVERY_CHARS = 500


async def _stream_draft(
    stream,
    inactivity_limit: float,
    overall_limit: float,
    emit: Emit,
    current_step: int,
) -> str:
    parts: list[str] = []
    length = 0
    emit(preview_stream_start())
    try:
        async for chunk in with_stall_timeout(stream, inactivity_limit, overall_limit):
            parts.append(chunk)
            emit(preview_stream_chunk(chunk))
            previous = length
            length += len(chunk)
            if length // PROGRESS_EVERY_CHARS > previous // PROGRESS_EVERY_CHARS:
                emit(status_event(f"Generating content... ({length} characters)", current_step=current_step))
    finally:
        emit(preview_stream_end())

    text = "".join(parts).strip()
    if not text:
        raise ValueError("Model returned no content")
    return text


# ============================================================================
# GENERATOR
# ============================================================================

async def generate_content(
    llm: LanguageModel,
    config: Settings,
    plan: Optional[str],
    settings: dict,
    emit: Emit,
) -> str:
    """Expand the plan into full content. Returns an error-tagged value on failure."""
    confirmed = require_complete(settings)
    if is_error_text(plan):
        logger.error("[Generator] Plan missing or invalid")
        emit(error_event("Cannot generate: invalid plan."))
        return f"{ERROR_PREFIX} Invalid plan."

    emit(status_event("Generating content draft...", current_step=1))
    prompt = GENERATOR_PROMPT.format_messages(plan=plan, **confirmed.model_dump())

    try:
        draft = await _stream_draft(
            llm.generate_stream(prompt, temperature=config.generator_temperature, model=config.generator_model),
            inactivity_limit=config.generation_stall_timeout,
            overall_limit=config.generation_timeout,
            emit=emit,
            current_step=1,
        )
    except GenerationStalled as e:
        logger.error(f"[Generator] {e}")
        emit(error_event(f"{e}. The model stopped producing output, please try again."))
        return f"{ERROR_PREFIX} Content generation stalled. {e}"
    except GenerationTimeout as e:
        logger.error(f"[Generator] {e}")
        emit(error_event(
            "Content generation timed out. The content was too complex to generate within the time limit. "
            "Please try with a simpler request or shorter content length."
        ))
        return f"{ERROR_PREFIX} Content generation timed out. {e}"
    except Exception as e:
        logger.error(f"[Generator] Error: {e}")
        emit(error_event(f"Content generation failed: {e}"))
        return f"{ERROR_PREFIX} Content generation failed. {e}"

    logger.info(f"[Generator] Draft: {draft[:100]}...")
    emit(preview_update_event(draft, attempt=0))
    emit(status_event("Initial content draft generated", current_step=1))
    return draft


# ============================================================================
# REFINER
# ============================================================================

class Refinement(NamedTuple):
    content: Optional[str]
    retry_count: int
    skipped: bool = False


async def refine_content(
    llm: LanguageModel,
    config: Settings,
    content: Optional[str],
    validation: Optional[dict],
    retry_count: int,
    emit: Emit,
) -> Refinement:
    """
    Rewrite content to address validator-reported errors.

    Only acts on status "errors_found"; any other status is a no-op that leaves
    content and retry_count untouched. Otherwise retry_count is incremented on
    entry, even when the model call fails, so the refine/validate loop always
    terminates.
    """
    status = (validation or {}).get("status")
    if status != "errors_found":
        logger.warning(f"[Refiner] Skipping refinement, validation status is {status}")
        emit(status_event(f"Skipping refinement: validation status is {status}."))
        return Refinement(content=content, retry_count=retry_count, skipped=True)

    attempt = retry_count + 1

    if is_error_text(content):
        logger.error("[Refiner] Draft content missing or invalid")
        emit(error_event("Cannot refine: invalid draft."))
        return Refinement(content=content, retry_count=attempt)

    emit(status_event(f"Refining content (Attempt {attempt})...", current_step=3))
    prompt = REFINER_PROMPT.format_messages(
        feedback=json.dumps(validation, indent=2),
        content=content,
    )

    try:
        refined = await _stream_draft(
            llm.generate_stream(prompt, temperature=config.refiner_temperature, model=config.generator_model),
            inactivity_limit=config.refinement_stall_timeout,
            overall_limit=config.refinement_timeout,
            emit=emit,
            current_step=3,
        )
    except GenerationStalled as e:
        logger.error(f"[Refiner] {e}")
        emit(error_event(f"Refinement stalled: {e}. Keeping the previous draft."))
        return Refinement(content=content, retry_count=attempt)
    except GenerationTimeout as e:
        logger.error(f"[Refiner] {e}")
        emit(error_event("Refinement took too long. Keeping the previous draft."))
        return Refinement(content=content, retry_count=attempt)
    except Exception as e:
        logger.error(f"[Refiner] Error: {e}")
        emit(error_event(f"Refinement failed: {e}"))
        return Refinement(content=content, retry_count=attempt)

    logger.info(f"[Refiner] Attempt {attempt}: {refined[:100]}...")
    emit(preview_update_event(refined, attempt=attempt))
    emit(status_event("Content refinement complete", current_step=3))
    return Refinement(content=refined, retry_count=attempt)
