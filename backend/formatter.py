"""
Formatter

Pure, synchronous assembly of the final artifact: title/metadata header, body,
and a footer whose disclaimer depends on the terminal validation status. This
is the last step that can return anything to the user, so it never raises.
"""

import logging
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from state import ERROR_PREFIX, ContentSettings, is_error_text

logger = logging.getLogger(__name__)

GENERATED_BY = "_Generated by AI Assistant_"


class FormattedContent(NamedTuple):
    text: str
    metadata: dict


def format_content(
    content: Optional[str],
    settings: Optional[dict],
    validation: Optional[dict],
    retry_count: int,
    request: str = "",
    refinement_limit: int = 3,
) -> FormattedContent:
    try:
        return _format(content, settings, validation, retry_count, request, refinement_limit)
    except Exception as e:
        logger.error(f"[Formatter] Error during formatting: {e}", exc_info=True)
        text = f"{ERROR_PREFIX} Formatting failed ({e}).\n\n---\n\n{content or ''}"
        return FormattedContent(text=text, metadata={"formattingError": str(e), "retryCount": retry_count})


def _format(
    content: Optional[str],
    settings: Optional[dict],
    validation: Optional[dict],
    retry_count: int,
    request: str,
    refinement_limit: int,
) -> FormattedContent:
    metadata = _base_metadata(settings, validation, retry_count)

    if is_error_text(content):
        detail = content or "no draft was produced"
        return FormattedContent(
            text=f"{ERROR_PREFIX} No content available to format.\n\n{detail}",
            metadata=metadata,
        )

    parsed = ContentSettings(**(settings or {}))
    if not parsed.is_complete():
        return FormattedContent(
            text=f"{ERROR_PREFIX} Settings missing.\n\n---\n\n{content}",
            metadata=metadata,
        )

    title = f"{parsed.content_type.title()} (Grade {parsed.grade_level} - {parsed.length.title()} Length)"
    topic = request.strip() or "As requested"
    header = (
        f"# {title}\n"
        f"**Topic:** {topic}\n"
        f"**Tone:** {parsed.tone}\n"
        f"**Name:** _________________   **Date:** __________\n"
        f"<hr/>\n\n"
    )
    footer = f"\n<hr/>\n{GENERATED_BY}" + disclaimer(validation, retry_count, refinement_limit)

    metadata["title"] = title
    return FormattedContent(text=header + content.strip() + "\n" + footer, metadata=metadata)


def disclaimer(validation: Optional[dict], retry_count: int, refinement_limit: int = 3) -> str:
    status = (validation or {}).get("status")
    errors = (validation or {}).get("errors") or []

    if status == "valid":
        return ""
    if status == "errors_found" and retry_count >= refinement_limit:
        note = (
            f"\n\n**Note:** Automatic refinement reached its limit ({retry_count} attempts). "
            "The content was formatted, but may still contain errors identified during validation. "
            "Please review carefully."
        )
        return note + _issue_list(errors)
    if status == "errors_found":
        return "\n\n**Note:** Content validation identified potential issues. Please review carefully." + _issue_list(errors)
    if status == "validation_error":
        return "\n\n**Note:** The content validation process encountered an error and could not be completed."
    return "\n\n**Note:** This content was not validated. Please review carefully."


def _issue_list(errors: list[dict]) -> str:
    if not errors:
        return ""
    lines = []
    for e in errors:
        line = f"- {e.get('detail', 'Unspecified issue')} ({e.get('location') or 'unknown'})"
        if e.get("correction"):
            line += f": {e['correction']}"
        lines.append(line)
    return "\n*Potential Issues:*\n" + "\n".join(lines)


def _base_metadata(settings: Optional[dict], validation: Optional[dict], retry_count: int) -> dict:
    settings = settings or {}
    return {
        "contentType": settings.get("content_type"),
        "gradeLevel": settings.get("grade_level"),
        "length": settings.get("length"),
        "tone": settings.get("tone"),
        "validationStatus": (validation or {}).get("status", "unknown"),
        "validationErrors": (validation or {}).get("errors") or [],
        "retryCount": retry_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
