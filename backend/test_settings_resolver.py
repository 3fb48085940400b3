"""
Tests for the Settings Resolver: extraction, merging and the completeness gate.
"""

import json

import pytest

from conftest import COMPLETE_SETTINGS, FakeLanguageModel
from settings_resolver import SettingsExtraction, missing_settings_question, resolve_settings


def extraction(updated, is_complete, question=None) -> str:
    return json.dumps({"updated_settings": updated, "is_complete": is_complete, "clarifying_question": question})


async def test_complete_settings_skip_the_model(config, llm):
    result = await resolve_settings(llm, config, COMPLETE_SETTINGS, "Make a quiz")
    assert result.is_complete
    assert llm.count("settings") == 0


async def test_extraction_completes_settings(config, llm):
    llm.script("settings", extraction({"length": "brief", "tone": "fun"}, True))
    current = {"content_type": "quiz", "grade_level": "4"}

    result = await resolve_settings(llm, config, current, "Keep it brief and fun")

    assert result.is_complete
    assert result.clarifying_question is None
    assert result.updated_settings.model_dump() == {
        "content_type": "quiz", "grade_level": "4", "length": "brief", "tone": "fun"
    }


async def test_known_values_survive_null_extraction(config, llm):
    llm.script("settings", extraction({"content_type": None, "grade_level": None, "tone": "academic"}, False, "How long?"))
    result = await resolve_settings(llm, config, {"content_type": "worksheet", "grade_level": "8"}, "Academic please")

    assert not result.is_complete
    assert result.updated_settings.content_type == "worksheet"
    assert result.updated_settings.grade_level == "8"
    assert result.clarifying_question == "How long?"


async def test_malformed_output_falls_back_to_listing_missing_fields(config, llm):
    llm.script("settings", "Sure! The grade is 8.")
    result = await resolve_settings(llm, config, {"grade_level": "8"}, "Grade 8")

    assert not result.is_complete
    assert result.error
    assert result.clarifying_question == missing_settings_question(["content_type", "length", "tone"])
    for label in ("content type", "length", "tone"):
        assert label in result.clarifying_question


async def test_model_failure_falls_back(config, llm):
    llm.script("settings", RuntimeError("quota exceeded"))
    result = await resolve_settings(llm, config, {}, "Make a worksheet")
    assert not result.is_complete
    assert result.clarifying_question.startswith("Before I start")


async def test_missing_question_is_generated_when_model_omits_it(config, llm):
    llm.script("settings", extraction({"grade_level": "6"}, False, None))
    result = await resolve_settings(llm, config, {}, "Grade 6")
    assert not result.is_complete
    assert "content type" in result.clarifying_question


@pytest.mark.parametrize(
    "current, extracted",
    [
        ({}, {"content_type": "lesson"}),
        ({"grade_level": "3"}, {"content_type": "quiz", "length": "brief", "tone": ""}),
        ({"content_type": "quiz", "grade_level": "3", "length": "brief"}, {"tone": None}),
        ({}, {"content_type": "quiz", "grade_level": 3, "length": "brief", "tone": "fun"}),
        ({"content_type": "quiz"}, {"grade_level": "  ", "length": "brief", "tone": "fun"}),
    ],
)
async def test_never_complete_unless_all_four_fields_filled(config, current, extracted):
    """The model claiming completeness is never enough on its own."""
    llm = FakeLanguageModel().script("settings", extraction(extracted, True))
    result = await resolve_settings(llm, config, current, "details")

    fields = result.updated_settings.model_dump()
    all_filled = all(isinstance(v, str) and v.strip() for v in fields.values())
    assert result.is_complete == all_filled
    if not result.is_complete:
        assert result.clarifying_question


async def test_structured_extraction_accepts_numeric_grade(config, llm):
    llm.script("settings", SettingsExtraction.model_validate({
        "updated_settings": {"content_type": "quiz", "grade_level": 7, "length": "brief", "tone": "fun"},
        "is_complete": True,
    }))
    result = await resolve_settings(llm, config, {}, "A brief fun quiz for 7th grade")

    assert result.is_complete
    assert result.updated_settings.grade_level == "7"
