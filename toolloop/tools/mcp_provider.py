from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from typing import Any, Callable

from toolloop.core import tracing as core_tracing
from toolloop.core.models import ToolDefinition, ToolResult
from toolloop.framework.tool_runtime import ToolExecutionError, ToolProvider, classify_tool_error

LOGGER = logging.getLogger(__name__)


def streamable_http_client_kwargs(
    client_factory: Callable[..., Any], timeout_s: float
) -> dict[str, Any]:
    """Best-effort timeout kwargs for different MCP SDK versions."""
    connect_timeout = min(10.0, timeout_s)
    try:
        params = inspect.signature(client_factory).parameters
    except (TypeError, ValueError):
        return {}
    candidates: dict[str, Any] = {
        "timeout": timeout_s,
        "request_timeout": timeout_s,
        "read_timeout": timeout_s,
        "connect_timeout": connect_timeout,
        "sse_read_timeout": timeout_s,
    }
    return {name: value for name, value in candidates.items() if name in params}


def _run_mcp_session(
    mcp_url: str,
    timeout_s: float,
    operation: Callable[[Any], Any],
    *,
    label: str,
) -> Any:
    try:
        from mcp import ClientSession
        from mcp.client.streamable_http import streamable_http_client
    except Exception as exc:  # noqa: BLE001
        raise ToolExecutionError(f"mcp_sdk_unavailable:{exc}") from exc

    streamable_kwargs = streamable_http_client_kwargs(streamable_http_client, timeout_s)
    started_at = time.monotonic()
    phase = "stream_open"

    async def _run() -> Any:
        nonlocal phase
        async with streamable_http_client(mcp_url, **streamable_kwargs) as (
            read_stream,
            write_stream,
            _session_id,
        ):
            async with ClientSession(read_stream, write_stream) as session:
                phase = "initialize"
                await session.initialize()
                phase = label
                return await operation(session)

    try:
        return asyncio.run(asyncio.wait_for(_run(), timeout=timeout_s))
    except (TimeoutError, asyncio.TimeoutError) as exc:
        elapsed_s = time.monotonic() - started_at
        detail = f"phase={phase};mcp_call_timed_out_after_{timeout_s:.1f}s;elapsed_s={elapsed_s:.3f}"
        raise ToolExecutionError(f"mcp_sdk_timeout:{detail}") from exc
    except Exception as exc:  # noqa: BLE001
        detail = "; ".join(flatten_exception_messages(exc))
        raise ToolExecutionError(
            f"mcp_sdk_error:phase={phase};error_type={exc.__class__.__name__};{detail}"
        ) from exc


def call_mcp_tool_sdk(
    mcp_url: str, tool_name: str, arguments: dict[str, Any], timeout_s: float
) -> Any:
    async def _call(session: Any) -> Any:
        return await session.call_tool(tool_name, arguments)

    result = _run_mcp_session(mcp_url, timeout_s, _call, label="call_tool")
    return extract_mcp_sdk_result(result)


def list_mcp_tools_sdk(mcp_url: str, timeout_s: float) -> list[ToolDefinition]:
    async def _list(session: Any) -> Any:
        return await session.list_tools()

    listing = _run_mcp_session(mcp_url, timeout_s, _list, label="list_tools")
    definitions: list[ToolDefinition] = []
    for tool in getattr(listing, "tools", None) or []:
        definitions.append(
            ToolDefinition(
                name=tool.name,
                description=getattr(tool, "description", None) or "",
                input_schema=getattr(tool, "inputSchema", None) or {},
            )
        )
    return definitions


def flatten_exception_messages(exc: BaseException) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for message in _collect_messages(exc):
        normalized = message.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped or [exc.__class__.__name__]


def _collect_messages(exc: BaseException) -> list[str]:
    messages = [str(exc)]
    nested = getattr(exc, "exceptions", None)
    if isinstance(nested, (list, tuple)):
        for child in nested:
            if isinstance(child, BaseException):
                messages.extend(_collect_messages(child))
    return messages


def extract_mcp_sdk_result(result: Any) -> Any:
    if getattr(result, "isError", False):
        error_detail = extract_mcp_error_detail(result)
        if error_detail:
            raise ToolExecutionError(f"mcp_tool_error:{error_detail}")
        raise ToolExecutionError("mcp_tool_error")

    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        # FastMCP wraps tool outputs as {"result": <tool_output>}.
        if set(structured) == {"result"}:
            return structured["result"]
        return structured

    content = getattr(result, "content", None)
    if isinstance(content, list):
        texts = [
            item.text
            for item in content
            if isinstance(getattr(item, "text", None), str) and item.text.strip()
        ]
        if len(texts) == 1:
            try:
                return json.loads(texts[0])
            except json.JSONDecodeError:
                return texts[0]
        if texts:
            return "\n".join(texts)

    raise ToolExecutionError("mcp_sdk_result_invalid")


def extract_mcp_error_detail(result: Any) -> str:
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return json.dumps(structured, ensure_ascii=True)
    content = getattr(result, "content", None)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            text = getattr(item, "text", None)
            if isinstance(text, str) and text.strip():
                parts.append(text.strip())
        if parts:
            return " | ".join(parts)
    return ""


class McpToolProvider(ToolProvider):
    """Tool provider backed by an MCP server reachable over streamable HTTP."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        timeout_s: float = 30.0,
        call_tool: Callable[[str, str, dict[str, Any], float], Any] | None = None,
        list_tools: Callable[[str, float], list[ToolDefinition]] | None = None,
    ) -> None:
        self.name = name
        self.url = url.rstrip("/")
        self.timeout_s = timeout_s
        self._call_tool = call_tool or call_mcp_tool_sdk
        self._list_tools = list_tools or list_mcp_tools_sdk

    def list_definitions(self) -> list[ToolDefinition]:
        with core_tracing.start_span(
            "tool_provider.mcp_list_tools",
            attributes={"mcp.provider": self.name, "mcp.url": self.url},
        ):
            definitions = self._list_tools(self.url, self.timeout_s)
        LOGGER.info("mcp_tools_listed provider=%s count=%d", self.name, len(definitions))
        return definitions

    def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        full_name = f"{self.name}:{tool_name}"
        started_at = time.monotonic()
        with core_tracing.start_span(
            "tool_provider.mcp_call",
            attributes={"mcp.tool_name": full_name, "mcp.url": self.url},
        ) as span:
            try:
                value = self._call_tool(self.url, tool_name, arguments, self.timeout_s)
            except ToolExecutionError as exc:
                error_text = str(exc)
                LOGGER.warning(
                    "mcp_call_failed tool=%s error_code=%s error=%s",
                    full_name,
                    classify_tool_error(error_text),
                    error_text,
                )
                core_tracing.set_span_attributes(span, {"mcp.status": "failed"})
                return ToolResult.failure(full_name, error_text)
            core_tracing.set_span_attributes(
                span,
                {"mcp.status": "ok", "mcp.elapsed_s": time.monotonic() - started_at},
            )
        return ToolResult.ok(full_name, value)
