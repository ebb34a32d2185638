from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .models import StepDecision, StepKind, ToolCall

LOGGER = logging.getLogger(__name__)

STEP_TOOL = "tool"
STEP_FINAL = "final"

_LEADING_FENCE = re.compile(r"^```[\w.+-]*[ \t]*\r?\n?")
_TRAILING_FENCE = re.compile(r"\r?\n?[ \t]*```$")


class ResponseParsingError(Exception):
    pass


@dataclass
class ParseFailure:
    raw_text: str
    diagnostics: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "; ".join(self.diagnostics) or "no_strategy_matched"


ParseOutcome = Union[StepDecision, ParseFailure]


class _StepPayload(BaseModel):
    """Wire shape of a structured model reply; unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")

    step: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = Field(
        default=None, validation_alias=AliasChoices("tool_calls", "toolCalls")
    )
    answer: Optional[str] = None
    sources: Optional[List[str]] = None
    tools_used: Optional[List[str]] = Field(
        default=None, validation_alias=AliasChoices("toolsUsed", "tools_used")
    )


def strip_code_fence(text: str) -> str:
    candidate = (text or "").strip()
    candidate = _LEADING_FENCE.sub("", candidate, count=1)
    candidate = _TRAILING_FENCE.sub("", candidate, count=1)
    return candidate.strip()


def _looks_structured(text: str) -> bool:
    return text.startswith(("{", "["))


class ResponseParserStrategy:
    name = "strategy"

    def can_handle(self, text: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def handle(self, text: str) -> StepDecision:  # pragma: no cover - interface
        raise NotImplementedError


class StructuredResponseStrategy(ResponseParserStrategy):
    name = "structured"

    def can_handle(self, text: str) -> bool:
        return _looks_structured(strip_code_fence(text))

    def handle(self, text: str) -> StepDecision:
        cleaned = strip_code_fence(text)
        try:
            # Models often emit raw newlines or tabs inside string values.
            data = json.loads(cleaned, strict=False)
        except json.JSONDecodeError as exc:
            raise ResponseParsingError(f"invalid_json: {exc.msg} at position {exc.pos}") from exc
        if not isinstance(data, dict):
            raise ResponseParsingError(f"expected a JSON object, got {type(data).__name__}")
        try:
            payload = _StepPayload.model_validate(data)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(map(str, err['loc'])) or '<root>'}: {err['msg']}"
                for err in exc.errors()[:5]
            )
            raise ResponseParsingError(f"schema_mismatch: {details}") from exc
        return _to_decision(payload)


class PlainTextResponseStrategy(ResponseParserStrategy):
    name = "plain_text"

    def can_handle(self, text: str) -> bool:
        return not _looks_structured(strip_code_fence(text))

    def handle(self, text: str) -> StepDecision:
        return StepDecision(kind=StepKind.final, answer=text if text is not None else "")


def _to_decision(payload: _StepPayload) -> StepDecision:
    sources = [item for item in (payload.sources or []) if item]
    hints = [item for item in (payload.tools_used or []) if item]
    step = (payload.step or "").strip().lower()
    if step == STEP_TOOL and payload.tool_calls:
        return StepDecision(
            kind=StepKind.tool,
            tool_calls=payload.tool_calls,
            answer=payload.answer,
            sources=sources,
            tools_used_hint=hints,
        )
    if step != STEP_FINAL:
        LOGGER.warning("response_step_unrecognized step=%r treated_as=final", payload.step)
    return StepDecision(
        kind=StepKind.final,
        answer=payload.answer or "",
        sources=sources,
        tools_used_hint=hints,
    )


def default_strategies() -> List[ResponseParserStrategy]:
    return [StructuredResponseStrategy(), PlainTextResponseStrategy()]


class ResponseParser:
    def __init__(self, strategies: Optional[Iterable[ResponseParserStrategy]] = None) -> None:
        self._strategies: Sequence[ResponseParserStrategy] = (
            list(strategies) if strategies is not None else default_strategies()
        )
        if not self._strategies:
            raise ValueError("ResponseParser requires at least one strategy")

    @property
    def strategies(self) -> Sequence[ResponseParserStrategy]:
        return tuple(self._strategies)

    def parse(self, raw_text: Any) -> ParseOutcome:
        text = raw_text if isinstance(raw_text, str) else ("" if raw_text is None else str(raw_text))
        diagnostics: List[str] = []
        for strategy in self._strategies:
            if not strategy.can_handle(text):
                continue
            try:
                decision = strategy.handle(text)
            except ResponseParsingError as exc:
                LOGGER.debug("response_strategy_failed strategy=%s error=%s", strategy.name, exc)
                diagnostics.append(f"{strategy.name}: {exc}")
                continue
            LOGGER.debug(
                "response_parsed strategy=%s kind=%s tool_calls=%d",
                strategy.name,
                decision.kind.value,
                len(decision.tool_calls),
            )
            return decision
        return ParseFailure(raw_text=text, diagnostics=diagnostics)
