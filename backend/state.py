"""
Graph State Definition for the Content Generation Engine

This module defines the GraphState TypedDict that flows through the LangGraph workflow,
plus the content settings and validation models shared by every agent.
All nodes must accept the full state and return partial updates to it.
"""

import operator
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, TypedDict

from pydantic import AliasChoices, BaseModel, Field, field_validator


REQUIRED_SETTINGS = ("content_type", "grade_level", "length", "tone")

ERROR_PREFIX = "Error:"


# ============================================================================
# CONTENT SETTINGS
# ============================================================================

class ContentSettings(BaseModel):
    """The four content parameters. Complete iff every field is a non-empty string."""
    content_type: Optional[str] = None
    grade_level: Optional[str] = None
    length: Optional[str] = None
    tone: Optional[str] = None

    def missing(self) -> list[str]:
        return [name for name in REQUIRED_SETTINGS if not _filled(getattr(self, name))]

    def is_complete(self) -> bool:
        return not self.missing()

    def merged_with(self, update: dict) -> "ContentSettings":
        """Fill fields from `update`; never overwrite a known value with null/blank."""
        merged = self.model_dump()
        for name in REQUIRED_SETTINGS:
            value = update.get(name)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                value = str(value)
            if _filled(value):
                merged[name] = str(value).strip()
        return ContentSettings(**merged)


def _filled(value) -> bool:
    return isinstance(value, str) and value.strip() != ""


def settings_complete(settings: Optional[dict]) -> bool:
    return ContentSettings(**(settings or {})).is_complete()


class SettingsIncompleteError(ValueError):
    """Raised when a downstream component is invoked with incomplete settings."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Settings incomplete: missing {', '.join(missing)}")


def require_complete(settings: Optional[dict]) -> ContentSettings:
    parsed = ContentSettings(**(settings or {}))
    if not parsed.is_complete():
        raise SettingsIncompleteError(parsed.missing())
    return parsed


# ============================================================================
# VALIDATION RESULT
# ============================================================================

class ValidationIssue(BaseModel):
    """Single itemized issue reported by the validator."""
    detail: str = Field(validation_alias=AliasChoices("detail", "error_detail"))
    location: Optional[str] = None
    correction: Optional[str] = None


class ValidationResult(BaseModel):
    status: Literal["valid", "errors_found", "validation_error"]
    errors: list[ValidationIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("errors", "suggestions", mode="before")
    @classmethod
    def _null_as_empty(cls, v):
        return v or []

    def normalized(self) -> "ValidationResult":
        """Repair the status/errors invariant: errors_found <=> errors non-empty."""
        if self.status == "errors_found" and not self.errors:
            return self.model_copy(update={"status": "valid", "errors": []})
        if self.status == "valid" and self.errors:
            return self.model_copy(update={"status": "errors_found"})
        return self

    @classmethod
    def failure(cls, detail: str, location: str = "Validator") -> "ValidationResult":
        return cls(
            status="validation_error",
            errors=[ValidationIssue(detail=detail, location=location)],
        )


# ============================================================================
# MESSAGES
# ============================================================================

class ThreadMessage(TypedDict):
    role: Literal["user", "assistant"]
    content: str
    created_at: str


def make_message(role: Literal["user", "assistant"], content: str) -> ThreadMessage:
    return {
        "role": role,
        "content": content,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def is_error_text(value: Optional[str]) -> bool:
    """True for missing values and error-tagged plan/content values."""
    return not value or value.startswith(ERROR_PREFIX)


# ============================================================================
# GRAPH STATE
# ============================================================================

class GraphState(TypedDict, total=False):
    """
    The state object that flows through the content generation workflow.

    Persisted by the LangGraph checkpointer per thread_id, so settings and
    messages carry across requests on the same thread. Per-request fields
    (plan, draft_content, validation, retry_count, final_content) are reset
    by the orchestrator at the start of each run.

    Field ownership (single writer per field):
        settings, settings_complete,
        awaiting_clarification, request       -> settings_resolver
        context                               -> context_retriever
        plan                                  -> planner
        draft_content                         -> generator, refiner
        validation                            -> validator
        retry_count                           -> refiner
        final_content, final_metadata         -> formatter
        messages                              -> append-only (reducer)
    """

    # --- Input ---
    thread_id: str
    user_input: str  # Latest user turn (may be a clarification answer)
    request: str  # The content request being fulfilled across clarification turns

    # --- Conversation ---
    messages: Annotated[List[ThreadMessage], operator.add]

    # --- Settings ---
    settings: dict
    settings_complete: bool
    awaiting_clarification: bool  # Last run ended with a clarifying question

    # --- Pipeline artifacts ---
    context: List[dict]  # [{content, similarity}]
    plan: Optional[str]
    draft_content: Optional[str]
    validation: Optional[dict]
    retry_count: int

    # --- Output ---
    final_content: Optional[str]
    final_metadata: Optional[dict]
