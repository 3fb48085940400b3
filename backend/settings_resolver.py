"""
Settings Resolver

Decides whether the four content settings are fully specified, extracting missing
ones from the latest user message with a low-temperature classification call.
Never reports completeness unless all four fields are non-empty strings.
"""

import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import Settings
from llm import LanguageModel
from prompts import SETTINGS_RESOLVER_PROMPT, format_history
from state import ContentSettings

logger = logging.getLogger(__name__)


SETTING_LABELS = {
    "content_type": "content type (e.g. worksheet, lesson, quiz)",
    "grade_level": "grade level",
    "length": "length (brief, standard, extended)",
    "tone": "tone (academic, conversational, simplified)",
}


class SettingsUpdate(BaseModel):
    """Values the model could read from the conversation; null when not mentioned."""
    model_config = ConfigDict(coerce_numbers_to_str=True)

    content_type: Optional[str] = None
    grade_level: Optional[str] = None
    length: Optional[str] = None
    tone: Optional[str] = None


class SettingsExtraction(BaseModel):
    """Structured output of the extraction call."""
    updated_settings: SettingsUpdate = Field(default_factory=SettingsUpdate)
    is_complete: bool
    clarifying_question: Optional[str] = None


class SettingsResolution(BaseModel):
    updated_settings: ContentSettings
    is_complete: bool
    clarifying_question: Optional[str] = None
    error: Optional[str] = None  # Set when the extraction call failed and we fell back


def missing_settings_question(missing: list[str]) -> str:
    labels = ", ".join(SETTING_LABELS.get(name, name) for name in missing)
    return f"Before I start, please provide the missing details: {labels}."


async def resolve_settings(
    llm: LanguageModel,
    config: Settings,
    settings: Optional[dict],
    latest_message: str,
    history: Optional[list[dict]] = None,
) -> SettingsResolution:
    current = ContentSettings(**(settings or {}))
    if current.is_complete():
        logger.info("[SettingsResolver] Settings already complete, skipping extraction")
        return SettingsResolution(updated_settings=current, is_complete=True)

    missing = current.missing()
    prompt = SETTINGS_RESOLVER_PROMPT.format_messages(
        history=format_history(history or []),
        current_settings=current.model_dump_json(indent=2),
        missing=", ".join(missing),
        latest_message=latest_message,
    )

    try:
        extraction = await asyncio.wait_for(
            llm.generate_structured(
                prompt, SettingsExtraction, temperature=config.settings_temperature, model=config.chat_model
            ),
            timeout=config.settings_timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"[SettingsResolver] Extraction timed out after {config.settings_timeout}s")
        return _fallback(current, "Settings clarification timed out")
    except (ValueError, ValidationError) as e:
        logger.warning(f"[SettingsResolver] Malformed extraction output: {e}")
        return _fallback(current, "Could not understand the content settings")
    except Exception as e:
        logger.error(f"[SettingsResolver] Extraction call failed: {e}")
        return _fallback(current, "Settings check failed")

    merged = current.merged_with(extraction.updated_settings.model_dump())
    logger.info(f"[SettingsResolver] Merged settings: {merged.model_dump()}")

    if merged.is_complete():
        return SettingsResolution(updated_settings=merged, is_complete=True)

    question = (extraction.clarifying_question or "").strip()
    if not question:
        logger.warning("[SettingsResolver] Incomplete settings without a question, using generic question")
        question = missing_settings_question(merged.missing())

    return SettingsResolution(
        updated_settings=merged,
        is_complete=False,
        clarifying_question=question,
    )


def _fallback(current: ContentSettings, reason: str) -> SettingsResolution:
    return SettingsResolution(
        updated_settings=current,
        is_complete=False,
        clarifying_question=missing_settings_question(current.missing()),
        error=reason,
    )
