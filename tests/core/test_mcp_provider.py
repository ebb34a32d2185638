from __future__ import annotations

from types import SimpleNamespace

import pytest

from toolloop.core.models import ToolDefinition
from toolloop.framework.tool_runtime import ToolExecutionError, classify_tool_error
from toolloop.tools.mcp_provider import (
    McpToolProvider,
    extract_mcp_sdk_result,
    flatten_exception_messages,
    streamable_http_client_kwargs,
)


def test_execute_delegates_to_sdk_call() -> None:
    seen: list[tuple[str, str, dict, float]] = []

    def fake_call(url: str, tool_name: str, arguments: dict, timeout_s: float):
        seen.append((url, tool_name, arguments, timeout_s))
        return {"issues": 3}

    provider = McpToolProvider("github", "http://github-mcp:9000/mcp/", timeout_s=5, call_tool=fake_call)
    result = provider.execute("count_issues", {"repo": "x"})

    assert result.success
    assert result.tool_name == "github:count_issues"
    assert result.value == {"issues": 3}
    assert seen == [("http://github-mcp:9000/mcp", "count_issues", {"repo": "x"}, 5)]


def test_execute_translates_sdk_errors() -> None:
    def fake_call(url: str, tool_name: str, arguments: dict, timeout_s: float):
        raise ToolExecutionError("mcp_sdk_timeout:phase=call_tool;mcp_call_timed_out_after_5.0s")

    result = McpToolProvider("github", "http://x", call_tool=fake_call).execute("t", {})

    assert not result.success
    assert classify_tool_error(result.error) == "runtime.timeout"


def test_list_definitions_uses_injected_listing() -> None:
    provider = McpToolProvider(
        "github",
        "http://x",
        list_tools=lambda url, timeout_s: [ToolDefinition(name="list_repos")],
    )
    assert [definition.name for definition in provider.list_definitions()] == ["list_repos"]


def test_extract_result_prefers_structured_content() -> None:
    result = SimpleNamespace(isError=False, structuredContent={"result": [{"documentName": "a"}]}, content=[])
    assert extract_mcp_sdk_result(result) == [{"documentName": "a"}]

    result = SimpleNamespace(isError=False, structuredContent={"value": 1, "unit": "s"}, content=[])
    assert extract_mcp_sdk_result(result) == {"value": 1, "unit": "s"}


def test_extract_result_decodes_text_content() -> None:
    as_json = SimpleNamespace(isError=False, structuredContent=None, content=[SimpleNamespace(text="[1, 2]")])
    assert extract_mcp_sdk_result(as_json) == [1, 2]

    as_text = SimpleNamespace(isError=False, structuredContent=None, content=[SimpleNamespace(text="plain")])
    assert extract_mcp_sdk_result(as_text) == "plain"


def test_extract_result_raises_on_tool_error() -> None:
    result = SimpleNamespace(isError=True, structuredContent=None, content=[SimpleNamespace(text="denied")])
    with pytest.raises(ToolExecutionError, match="mcp_tool_error:denied"):
        extract_mcp_sdk_result(result)


def test_extract_result_raises_on_empty_result() -> None:
    with pytest.raises(ToolExecutionError, match="mcp_sdk_result_invalid"):
        extract_mcp_sdk_result(SimpleNamespace(isError=False, structuredContent=None, content=[]))


def test_flatten_exception_messages_walks_groups() -> None:
    group = ExceptionGroup("outer", [ValueError("inner"), ValueError("inner"), RuntimeError("")])
    assert flatten_exception_messages(group) == ["outer (3 sub-exceptions)", "inner"]


def test_flatten_exception_messages_falls_back_to_class_name() -> None:
    assert flatten_exception_messages(RuntimeError("  ")) == ["RuntimeError"]


def test_streamable_kwargs_match_signature() -> None:
    def factory(url, timeout=None, sse_read_timeout=None):
        return None

    assert streamable_http_client_kwargs(factory, 20.0) == {"timeout": 20.0, "sse_read_timeout": 20.0}


def test_installed_sdk_exports_streamable_http_client() -> None:
    from mcp.client.streamable_http import streamable_http_client

    assert callable(streamable_http_client)
