from __future__ import annotations

import logging
from typing import Any

from toolloop.core.models import ToolDefinition
from toolloop.framework.tool_runtime import FunctionToolProvider, Tool, ToolExecutionError

LOGGER = logging.getLogger(__name__)

NATIVE_PROVIDER_NAME = "native"
MAX_FIBONACCI_N = 1000


def add_numbers(payload: dict[str, Any]) -> Any:
    result = payload["a"] + payload["b"]
    LOGGER.debug("add_numbers a=%s b=%s result=%s", payload["a"], payload["b"], result)
    return result


def calculate_fibonacci(payload: dict[str, Any]) -> int:
    n = payload["n"]
    if n < 0:
        raise ToolExecutionError("contract.input_invalid: 'n' must be non-negative")
    previous, current = 0, 1
    for _ in range(n):
        previous, current = current, previous + current
    return previous


def reverse_string(payload: dict[str, Any]) -> str:
    return payload["text"][::-1]


def count_words(payload: dict[str, Any]) -> int:
    return len(payload["text"].split())


def native_tools() -> list[Tool]:
    return [
        Tool(
            definition=ToolDefinition(
                name="add_numbers",
                description="Add two numbers and return the sum",
                input_schema={
                    "type": "object",
                    "properties": {
                        "a": {"type": "number", "description": "First number"},
                        "b": {"type": "number", "description": "Second number"},
                    },
                    "required": ["a", "b"],
                },
            ),
            handler=add_numbers,
            timeout_s=3,
        ),
        Tool(
            definition=ToolDefinition(
                name="calculate_fibonacci",
                description="Calculate the n-th Fibonacci number",
                input_schema={
                    "type": "object",
                    "properties": {
                        "n": {
                            "type": "integer",
                            "minimum": 0,
                            "maximum": MAX_FIBONACCI_N,
                            "description": "Position in the Fibonacci sequence",
                        }
                    },
                    "required": ["n"],
                },
            ),
            handler=calculate_fibonacci,
            timeout_s=3,
        ),
        Tool(
            definition=ToolDefinition(
                name="reverse_string",
                description="Reverse a string",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string", "description": "Text to reverse"}},
                    "required": ["text"],
                },
            ),
            handler=reverse_string,
            timeout_s=3,
        ),
        Tool(
            definition=ToolDefinition(
                name="count_words",
                description="Count whitespace-separated words in a text",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string", "description": "Text to count"}},
                    "required": ["text"],
                },
            ),
            handler=count_words,
            timeout_s=3,
        ),
    ]


class NativeToolProvider(FunctionToolProvider):
    """In-process tools served under the ``native`` provider prefix."""

    def __init__(self, name: str = NATIVE_PROVIDER_NAME) -> None:
        super().__init__(name, native_tools())
