from __future__ import annotations

import json
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .models import Message, ToolDefinition

DEFAULT_LOCALE = "en"

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "parse_failed": "Sorry, an error occurred while processing the response. Please try again.",
        "too_many_steps": (
            "Sorry, maximum number of iterations exceeded. Please rephrase your request."
        ),
        "model_unavailable": (
            "Sorry, the language model is currently unavailable. Please try again later."
        ),
        "internal_error": "Sorry, an internal error occurred. Please try again.",
        "sources_header": "**📚 Sources:**",
    },
    "de": {
        "parse_failed": (
            "Entschuldigung, bei der Verarbeitung der Antwort ist ein Fehler aufgetreten. "
            "Bitte versuchen Sie es erneut."
        ),
        "too_many_steps": (
            "Entschuldigung, die maximale Anzahl an Schritten wurde überschritten. "
            "Bitte formulieren Sie Ihre Anfrage um."
        ),
        "model_unavailable": (
            "Entschuldigung, das Sprachmodell ist derzeit nicht erreichbar. "
            "Bitte versuchen Sie es später erneut."
        ),
        "internal_error": (
            "Entschuldigung, ein interner Fehler ist aufgetreten. Bitte versuchen Sie es erneut."
        ),
        "sources_header": "**📚 Quellen der Information:**",
    },
    "ru": {
        "parse_failed": (
            "Извините, при обработке ответа произошла ошибка. Пожалуйста, попробуйте ещё раз."
        ),
        "too_many_steps": (
            "Извините, превышено максимальное количество шагов. "
            "Пожалуйста, переформулируйте запрос."
        ),
        "model_unavailable": (
            "Извините, языковая модель сейчас недоступна. Пожалуйста, попробуйте позже."
        ),
        "internal_error": "Извините, произошла внутренняя ошибка. Пожалуйста, попробуйте ещё раз.",
        "sources_header": "**📚 Источники:**",
    },
}

JSON_CORRECTION_PROMPT = (
    "Your previous reply was not valid JSON in the required format. "
    "Respond again with ONLY a JSON object, no prose and no markdown fences.\n"
    'Use {"step": "tool", "tool_calls": [{"name": "...", "arguments": {...}}]} to call tools, '
    'or {"step": "final", "answer": "...", "sources": [], "toolsUsed": []} to answer.'
)

RESPONSE_PROTOCOL = (
    "Response format:\n"
    "Always reply with a single JSON object and nothing else.\n"
    "To call tools:\n"
    '{"step": "tool", "tool_calls": [{"name": "provider:tool", "arguments": {}}]}\n'
    "To answer the user:\n"
    '{"step": "final", "answer": "...", "sources": ["..."], "toolsUsed": ["provider:tool"]}\n'
    "Rules:\n"
    "- Use tool names exactly as listed, including the provider prefix.\n"
    "- Arguments must match the tool's input schema.\n"
    "- After tool results arrive, either call more tools or give the final answer.\n"
    "- List document names from search results in sources when you used them."
)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant that can call tools to answer the user."


def message(key: str, locale: Optional[str] = None) -> str:
    catalogue = MESSAGES.get((locale or DEFAULT_LOCALE).lower(), MESSAGES[DEFAULT_LOCALE])
    return catalogue.get(key, MESSAGES[DEFAULT_LOCALE][key])


def format_tools_section(definitions: Sequence[ToolDefinition]) -> str:
    if not definitions:
        return "Available tools: none. Answer directly with a final step."
    lines = ["Available tools:"]
    for index, definition in enumerate(definitions, 1):
        lines.append(f"{index}. {definition.name}")
        if definition.description:
            lines.append(f"   Description: {definition.description}")
        if definition.input_schema:
            schema_json = json.dumps(definition.input_schema, ensure_ascii=False, indent=2)
            lines.append("   Input schema:")
            lines.extend(f"   {line}" for line in schema_json.splitlines())
    return "\n".join(lines)


def build_system_prompt(
    definitions: Sequence[ToolDefinition], instructions: Optional[str] = None
) -> str:
    return "\n\n".join(
        [
            (instructions or DEFAULT_INSTRUCTIONS).strip(),
            format_tools_section(definitions),
            RESPONSE_PROTOCOL,
        ]
    )


def build_initial_messages(
    user_message: str,
    definitions: Sequence[ToolDefinition],
    instructions: Optional[str] = None,
) -> List[Message]:
    return [
        Message.system(build_system_prompt(definitions, instructions)),
        Message.user(user_message),
    ]


def format_tool_result_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def format_tool_results(entries: Iterable[Tuple[str, str]]) -> str:
    """Render ``(tool_name, text)`` pairs as the user turn fed back to the model."""
    parts = ["Tool execution results:\n\n"]
    for name, text in entries:
        parts.append(f"TOOL_RESULT {name}:\n{text}\n\n")
    return "".join(parts).strip()
