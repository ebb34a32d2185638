from __future__ import annotations

import contextvars
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from toolloop.core.models import ToolDefinition, ToolResult


class ToolExecutionError(Exception):
    pass


tool_input_type = dict[str, Any]
LOGGER = logging.getLogger(__name__)


class ToolProvider:
    """One backend namespace of tools, addressed by the registry as ``name:tool``.

    Implementations translate their own transport failures into a failed
    ``ToolResult`` and apply their own timeouts.
    """

    name: str = ""

    def execute(self, tool_name: str, arguments: tool_input_type) -> ToolResult:  # pragma: no cover - interface
        raise NotImplementedError

    def list_definitions(self) -> list[ToolDefinition]:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class Tool:
    definition: ToolDefinition
    handler: Callable[[tool_input_type], Any]
    timeout_s: float | None = 30.0


class FunctionToolProvider(ToolProvider):
    def __init__(self, name: str, tools: Iterable[Tool] = ()) -> None:
        if not name:
            raise ValueError("provider name must not be empty")
        self.name = name
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.definition.name] = tool

    def list_definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def execute(self, tool_name: str, arguments: tool_input_type) -> ToolResult:
        full_name = f"{self.name}:{tool_name}"
        tool = self._tools.get(tool_name)
        if tool is None:
            available = ", ".join(self._tools) or "none"
            return ToolResult.failure(
                full_name, f"unknown_tool:{tool_name} (available: {available})"
            )
        started_at = time.monotonic()
        try:
            validate_schema(tool.definition.input_schema, arguments, "input")
            value = run_with_timeout(lambda: tool.handler(arguments), tool.timeout_s)
        except ToolExecutionError as exc:
            error_text = str(exc)
            LOGGER.warning(
                "function_tool_failed tool=%s error_code=%s error=%s",
                full_name,
                classify_tool_error(error_text),
                error_text,
            )
            return ToolResult.failure(full_name, error_text)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("function_tool_unhandled tool=%s", full_name)
            return ToolResult.failure(full_name, f"{exc.__class__.__name__}: {exc}")
        LOGGER.info(
            "function_tool_completed tool=%s elapsed_ms=%d",
            full_name,
            int((time.monotonic() - started_at) * 1000),
        )
        return ToolResult.ok(full_name, value)


_ERROR_CODE_PREFIXES: tuple[tuple[str, str], ...] = (
    ("input schema validation failed", "contract.input_invalid"),
    ("unknown_tool:", "contract.tool_not_found"),
    ("unknown_provider:", "contract.provider_not_found"),
    ("invalid_tool_name:", "contract.invalid_tool_name"),
    ("tool_call_timed_out:", "runtime.timeout"),
    ("mcp_sdk_timeout:", "runtime.timeout"),
    ("mcp_sdk_error:", "runtime.upstream_error"),
    ("mcp_tool_error", "runtime.tool_error"),
    ("http_error:", "runtime.http_error"),
    ("connection_error:", "runtime.upstream_unavailable"),
)


def classify_tool_error(error_text: str) -> str:
    """Map a failed ``ToolResult.error`` onto a stable, loggable error code."""
    text = (error_text or "").strip()
    if text.lower().startswith("contract."):
        return text.lower().split(":", 1)[0]
    for prefix, code in _ERROR_CODE_PREFIXES:
        if text.startswith(prefix):
            return code
    if "timeout" in text.lower() or "timed out" in text.lower():
        return "runtime.timeout"
    return "runtime.tool_error"


def sanitize_payload(payload: Any) -> dict[str, Any]:
    """Copy of tool arguments that is safe to log: private keys dropped, values JSON-able."""
    if not isinstance(payload, dict):
        return {}
    return _loggable(payload)


def _loggable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {
            key: _loggable(item)
            for key, item in value.items()
            if not (isinstance(key, str) and key.startswith("_"))
        }
    if isinstance(value, (list, tuple)):
        return [_loggable(item) for item in value]
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


def run_with_timeout(handler: Callable[[], Any], timeout_s: float | None) -> Any:
    if timeout_s is None or timeout_s <= 0:
        return handler()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tool-call")
    future = pool.submit(contextvars.copy_context().run, handler)
    try:
        return future.result(timeout=timeout_s)
    except FuturesTimeoutError as exc:
        raise ToolExecutionError(f"tool_call_timed_out:no result after {timeout_s}s") from exc
    finally:
        # A hung handler keeps its thread; the caller moves on.
        pool.shutdown(wait=False, cancel_futures=True)


def validate_schema(schema: dict[str, Any] | None, payload: Any, label: str) -> None:
    if not schema:
        return
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        raise ToolExecutionError(f"contract.schema_invalid: {label} schema: {exc.message}") from exc
    problems = [
        f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
        for error in Draft202012Validator(schema).iter_errors(payload)
    ]
    if problems:
        problems.sort()
        raise ToolExecutionError(f"{label} schema validation failed: {'; '.join(problems[:5])}")
