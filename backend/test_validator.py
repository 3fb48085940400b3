"""
Tests for the Validator: structured results, self-repair and failure-as-data.
"""

import json

from conftest import COMPLETE_SETTINGS, ERRORS_FOUND, Slow
from state import ValidationResult
from validator import validate_content

DRAFT = "# Worksheet\n1. $2 + 2 = 5$"


async def test_valid_result_is_emitted(config, llm):
    events = []
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, events.append)

    assert result.status == "valid"
    emitted = [e for e in events if e["type"] == "validation_result"]
    assert len(emitted) == 1
    assert emitted[0]["validation"]["status"] == "valid"


async def test_errors_found_carries_itemized_corrections(config, llm):
    llm.script("validator", ERRORS_FOUND)
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)

    assert result.status == "errors_found"
    assert result.errors[0].correction == "2 + 2 = 4"


async def test_errors_found_without_errors_is_repaired_to_valid(config, llm):
    llm.script("validator", json.dumps({"status": "errors_found", "errors": None, "suggestions": None}))
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)
    assert result.status == "valid"
    assert result.errors == []


async def test_valid_with_errors_is_repaired_to_errors_found(config, llm):
    llm.script("validator", json.dumps({"status": "valid", "errors": [{"error_detail": "sign error"}]}))
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)
    assert result.status == "errors_found"
    assert result.errors[0].detail == "sign error"


async def test_malformed_output_becomes_validation_error(config, llm):
    llm.script("validator", "Looks good to me!")
    events = []
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, events.append)

    assert result.status == "validation_error"
    assert len(result.errors) == 1
    assert any(e["type"] == "error" for e in events)


async def test_model_failure_becomes_validation_error(config, llm):
    llm.script("validator", RuntimeError("service unavailable"))
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)
    assert result.status == "validation_error"
    assert "service unavailable" in result.errors[0].detail


async def test_timeout_becomes_validation_error(config, llm):
    config = config.model_copy(update={"validation_timeout": 0.1})
    llm.script("validator", Slow(1.0, '{"status": "valid"}'))
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)
    assert result.status == "validation_error"
    assert "timed out" in result.errors[0].detail


async def test_error_tagged_draft_is_not_sent_to_the_model(config, llm):
    result = await validate_content(llm, config, "Error: Content generation failed.", COMPLETE_SETTINGS, lambda e: None)
    assert result.status == "validation_error"
    assert result.errors[0].detail == "Missing content"
    assert llm.count("validator") == 0


async def test_incomplete_settings_are_rejected(config, llm):
    result = await validate_content(llm, config, DRAFT, {"grade_level": "8"}, lambda e: None)
    assert result.status == "validation_error"
    assert "Settings incomplete" in result.errors[0].detail
    assert llm.count("validator") == 0


async def test_structured_result_is_repaired_and_null_lists_accepted(config, llm):
    llm.script("validator", ValidationResult.model_validate({"status": "errors_found", "errors": None, "suggestions": None}))
    result = await validate_content(llm, config, DRAFT, COMPLETE_SETTINGS, lambda e: None)

    assert result.status == "valid"
    assert result.errors == []
    assert result.suggestions == []
