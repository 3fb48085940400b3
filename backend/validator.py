"""
Mathematical accuracy validator.

Reviews generated content at the lowest temperature and returns a structured
ValidationResult. Failures are data, not exceptions: call errors, timeouts and
malformed output all become a "validation_error" result with one descriptive
entry. Model verdicts are repaired so that "errors_found" holds exactly when
errors are listed.
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from config import Settings
from events import Emit, error_event, status_event, validation_result_event
from llm import LanguageModel
from prompts import VALIDATOR_PROMPT
from state import ContentSettings, ValidationResult, is_error_text

logger = logging.getLogger(__name__)


async def validate_content(
    llm: LanguageModel,
    config: Settings,
    content: Optional[str],
    settings: dict,
    emit: Emit,
) -> ValidationResult:
    result = await _validate(llm, config, content, settings, emit)
    emit(validation_result_event(result.model_dump()))
    emit(status_event(f"Validation complete: {result.status}", current_step=2))
    return result


async def _validate(
    llm: LanguageModel,
    config: Settings,
    content: Optional[str],
    settings: dict,
    emit: Emit,
) -> ValidationResult:
    if is_error_text(content):
        logger.error("[Validator] Draft content missing or invalid")
        emit(error_event("Cannot validate: invalid draft."))
        return ValidationResult.failure("Missing content")

    parsed_settings = ContentSettings(**(settings or {}))
    if not parsed_settings.is_complete():
        emit(error_event("Cannot validate: settings incomplete."))
        return ValidationResult.failure(f"Settings incomplete: missing {', '.join(parsed_settings.missing())}")

    emit(status_event("Validating content...", current_step=2))
    prompt = VALIDATOR_PROMPT.format_messages(
        content=content,
        grade_level=parsed_settings.grade_level,
        content_type=parsed_settings.content_type,
    )

    try:
        result = await asyncio.wait_for(
            llm.generate_structured(
                prompt, ValidationResult, temperature=config.validator_temperature, model=config.validator_model
            ),
            timeout=config.validation_timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"[Validator] Timed out after {config.validation_timeout}s")
        emit(error_event("Validation timed out."))
        return ValidationResult.failure("Validation timed out", location="Validator Node")
    except (ValueError, ValidationError) as e:
        logger.error(f"[Validator] Malformed validation output: {e}")
        emit(error_event("Validation returned an unreadable result."))
        return ValidationResult.failure(f"Invalid structure from validation model: {e}", location="Validator Node")
    except Exception as e:
        logger.error(f"[Validator] Error: {e}")
        emit(error_event(f"Validation failed: {e}"))
        return ValidationResult.failure(str(e) or "Validation process failed", location="Validator Node")

    normalized = result.normalized()
    if normalized.status != result.status:
        logger.warning(
            f"[Validator] Corrected inconsistent status {result.status} -> {normalized.status} "
            f"({len(result.errors)} errors listed)"
        )
    if normalized.status == "validation_error" and not normalized.errors:
        normalized = ValidationResult.failure("Validator reported an error without details", location="Validator Node")

    logger.info(f"[Validator] Status: {normalized.status}, errors: {len(normalized.errors)}")
    return normalized
