"""Tests for template section checks and corrective re-prompts."""

from __future__ import annotations

import pytest

from querypilot.ai.orchestration.template_validator import TemplateValidator
from querypilot.ai.orchestration.types import LoopResult, ResponseSchema, ToolCallRecord

SCHEMA = ResponseSchema(key="sales_summary", required_sections=("## A", "## B"), hint_text="Use ## A then ## B")


class _ScriptedChat:
    def __init__(self, *texts: str) -> None:
        self._texts = list(texts)
        self.messages: list[str] = []

    async def __call__(self, message: str) -> LoopResult:
        self.messages.append(message)
        text = self._texts.pop(0)
        return LoopResult(text=text, tool_calls=(ToolCallRecord(name="run_query"),), rounds=1)


def test_validate_reports_missing_in_schema_order() -> None:
    check = TemplateValidator().validate("## B only", ResponseSchema("k", ("## A", "## B", "## C")))

    assert not check.valid
    assert check.missing_sections == ("## A", "## C")


def test_validate_is_case_sensitive() -> None:
    check = TemplateValidator().validate("## a\n## b", SCHEMA)

    assert check.missing_sections == ("## A", "## B")


def test_no_schema_is_always_valid() -> None:
    assert TemplateValidator().validate("anything", None).valid


@pytest.mark.asyncio
async def test_valid_answer_needs_no_correction() -> None:
    chat = _ScriptedChat("## A\n## B")

    outcome = await TemplateValidator().enforce(chat, "question", SCHEMA)

    assert outcome.valid
    assert outcome.corrections == 0
    assert chat.messages == ["question"]


@pytest.mark.asyncio
async def test_correction_fixes_answer(telemetry_events) -> None:
    chat = _ScriptedChat("## A only", "## A\n## B")

    outcome = await TemplateValidator().enforce(chat, "question", SCHEMA)

    assert outcome.valid
    assert outcome.text == "## A\n## B"
    assert outcome.corrections == 1
    assert len(outcome.tool_calls) == 2
    assert outcome.rounds == 2
    assert '"## B"' in chat.messages[1]
    assert "sales_summary" in chat.messages[1]
    assert "Use ## A then ## B" in chat.messages[1]
    assert telemetry_events[0]["event"] == "template_correction"
    assert telemetry_events[0]["missing_sections"] == ["## B"]


@pytest.mark.asyncio
async def test_still_invalid_answer_gets_warning_suffix() -> None:
    chat = _ScriptedChat("## A only", "## A again")

    outcome = await TemplateValidator().enforce(chat, "question", SCHEMA)

    assert not outcome.valid
    assert outcome.missing_sections == ("## B",)
    assert outcome.text.startswith("## A again")
    assert outcome.text.endswith("WARNING: Response is missing required template section(s): ## B")


@pytest.mark.asyncio
async def test_zero_correction_budget() -> None:
    chat = _ScriptedChat("nothing")

    outcome = await TemplateValidator(max_corrections=0).enforce(chat, "question", SCHEMA)

    assert not outcome.valid
    assert outcome.corrections == 0
    assert len(chat.messages) == 1
    assert "## A, ## B" in outcome.text


def test_negative_budget_rejected() -> None:
    with pytest.raises(ValueError):
        TemplateValidator(max_corrections=-1)
