from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .sources import DEFAULT_SOURCE_FIELD

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TEMPERATURE = 0.7
DEFAULT_SOURCE_TOOLS = ("rag:search_documents",)


class LoopSettings(BaseModel):
    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=1)
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: Optional[int] = None
    source_tools: List[str] = Field(default_factory=lambda: list(DEFAULT_SOURCE_TOOLS))
    source_field: str = DEFAULT_SOURCE_FIELD
    locale: str = "en"
    parallel_tool_calls: bool = False
    max_tool_workers: int = Field(default=4, ge=1)

    @field_validator("locale")
    @classmethod
    def _normalize_locale(cls, value: str) -> str:
        return (value or "en").strip().lower() or "en"

    @classmethod
    def from_env(cls) -> "LoopSettings":
        max_iterations = _parse_optional_int(os.getenv("TOOL_LOOP_MAX_ITERATIONS"))
        temperature = _parse_optional_float(os.getenv("TOOL_LOOP_TEMPERATURE"))
        max_tokens = _parse_optional_int(os.getenv("TOOL_LOOP_MAX_TOKENS"))
        max_workers = _parse_optional_int(os.getenv("TOOL_LOOP_MAX_TOOL_WORKERS"))
        source_tools = _parse_list(os.getenv("TOOL_LOOP_SOURCE_TOOLS"))
        return cls(
            max_iterations=max_iterations if max_iterations and max_iterations > 0 else DEFAULT_MAX_ITERATIONS,
            temperature=temperature if temperature is not None else DEFAULT_TEMPERATURE,
            max_tokens=max_tokens if max_tokens and max_tokens > 0 else None,
            source_tools=source_tools if source_tools is not None else list(DEFAULT_SOURCE_TOOLS),
            source_field=os.getenv("TOOL_LOOP_SOURCE_FIELD") or DEFAULT_SOURCE_FIELD,
            locale=os.getenv("TOOL_LOOP_LOCALE") or "en",
            parallel_tool_calls=_parse_bool(os.getenv("TOOL_LOOP_PARALLEL_TOOL_CALLS"), False),
            max_tool_workers=max_workers if max_workers and max_workers > 0 else 4,
        )


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]
