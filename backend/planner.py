"""
Content Planner

Produces a Markdown outline from the request, settings and retrieved context.
Failure yields an error-tagged plan ("Error: ...") that every downstream step
recognizes and refuses to build on.
"""

import asyncio
import logging

from config import Settings
from events import Emit, error_event, status_event
from llm import LanguageModel
from prompts import PLANNER_PROMPT, format_context
from state import ERROR_PREFIX, require_complete

logger = logging.getLogger(__name__)


async def plan_content(
    llm: LanguageModel,
    config: Settings,
    request: str,
    settings: dict,
    context: list[dict],
    emit: Emit,
) -> str:
    confirmed = require_complete(settings)
    if not request.strip():
        emit(error_event("Cannot plan: user request missing."))
        return f"{ERROR_PREFIX} User request missing."

    emit(status_event("Planning content...", current_step=1))

    prompt = PLANNER_PROMPT.format_messages(
        request=request,
        context=format_context(context),
        **confirmed.model_dump(),
    )
    try:
        plan = await asyncio.wait_for(
            llm.generate(prompt, temperature=config.planner_temperature, model=config.planner_model),
            timeout=config.planner_timeout,
        )
        plan = plan.strip()
        if not plan:
            raise ValueError("Model returned an empty plan")
    except asyncio.TimeoutError:
        logger.error(f"[Planner] Timed out after {config.planner_timeout}s")
        emit(error_event("Content planning timed out."))
        return f"{ERROR_PREFIX} Content planning failed. Planning timed out."
    except Exception as e:
        logger.error(f"[Planner] Error: {e}")
        emit(error_event(f"Content planning failed: {e}"))
        return f"{ERROR_PREFIX} Content planning failed. {e}"

    logger.info(f"[Planner] Plan: {plan[:100]}...")
    emit(status_event("Content plan generated", current_step=1))
    return plan
