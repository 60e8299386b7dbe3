"""Structured-output enforcement for final answers.

Section checks are literal, case-sensitive substring matches against the
answer text. That is intentionally simple: the templates use distinctive
markdown headings, and a looser match would accept answers that only
mention a section name in passing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from ...services import telemetry as telemetry_service
from .types import LoopResult, ResponseSchema, ToolCallRecord

__all__ = [
    "TemplateCheck",
    "TemplateOutcome",
    "TemplateValidator",
    "ChatCallback",
    "DEFAULT_MAX_CORRECTIONS",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CORRECTIONS = 1

ChatCallback = Callable[[str], Awaitable[LoopResult]]


@dataclass(slots=True, frozen=True)
class TemplateCheck:
    valid: bool
    missing_sections: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class TemplateOutcome:
    """Final text of a turn plus its template verdict.

    ``tool_calls`` spans every pass, including corrective ones.
    """

    text: str
    valid: bool
    missing_sections: tuple[str, ...] = ()
    tool_calls: tuple[ToolCallRecord, ...] = ()
    corrections: int = 0
    rounds: int = 0


class TemplateValidator:
    """Checks answers against a :class:`ResponseSchema` and requests corrections."""

    def __init__(self, *, max_corrections: int = DEFAULT_MAX_CORRECTIONS) -> None:
        if max_corrections < 0:
            raise ValueError("max_corrections must be non-negative")
        self._max_corrections = max_corrections

    @property
    def max_corrections(self) -> int:
        return self._max_corrections

    def validate(self, text: str, schema: ResponseSchema | None) -> TemplateCheck:
        if schema is None:
            return TemplateCheck(valid=True)
        missing = tuple(section for section in schema.required_sections if section not in (text or ""))
        return TemplateCheck(valid=not missing, missing_sections=missing)

    def corrective_message(self, schema: ResponseSchema, missing: Sequence[str]) -> str:
        sections = ", ".join(f'"{section}"' for section in missing)
        lines = [
            f"Your previous answer is missing the required section(s): {sections}.",
            f'Resend the complete answer using the exact markdown template for "{schema.key}", '
            "keeping every heading verbatim.",
        ]
        if schema.hint_text:
            lines.extend(["", schema.hint_text])
        return "\n".join(lines)

    @staticmethod
    def warning_suffix(missing: Sequence[str]) -> str:
        return "\n\nWARNING: Response is missing required template section(s): " + ", ".join(missing)

    async def enforce(
        self,
        chat: ChatCallback,
        message: str,
        schema: ResponseSchema | None,
    ) -> TemplateOutcome:
        """Run ``chat`` and re-run it with a corrective prompt while sections are missing.

        An answer that is still off-template after the correction budget is
        returned with a ``WARNING`` suffix and ``valid=False``; it is never
        raised as an error.
        """
        result = await chat(message)
        tool_calls = list(result.tool_calls)
        rounds = result.rounds
        check = self.validate(result.text, schema)
        corrections = 0

        while not check.valid and schema is not None and corrections < self._max_corrections:
            corrections += 1
            LOGGER.info(
                "Answer for schema %s missing sections %s; requesting correction %d/%d",
                schema.key,
                list(check.missing_sections),
                corrections,
                self._max_corrections,
            )
            telemetry_service.emit(
                "template_correction",
                {
                    "schema": schema.key,
                    "missing_sections": list(check.missing_sections),
                    "attempt": corrections,
                },
            )
            result = await chat(self.corrective_message(schema, check.missing_sections))
            tool_calls.extend(result.tool_calls)
            rounds += result.rounds
            check = self.validate(result.text, schema)

        text = result.text
        if not check.valid:
            LOGGER.warning("Answer still missing sections %s after %d correction(s)", list(check.missing_sections), corrections)
            text += self.warning_suffix(check.missing_sections)
        return TemplateOutcome(
            text=text,
            valid=check.valid,
            missing_sections=check.missing_sections,
            tool_calls=tuple(tool_calls),
            corrections=corrections,
            rounds=rounds,
        )
