from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from toolloop.core.models import ToolDefinition, ToolResult
from toolloop.framework.tool_runtime import ToolProvider, classify_tool_error

LOGGER = logging.getLogger(__name__)


class HttpToolProvider(ToolProvider):
    """Tool provider speaking the REST tool protocol.

    ``GET {base}/api/tools`` lists tool definitions and
    ``POST {base}/api/tools/execute`` with ``{"toolName", "arguments"}``
    returns ``{"success", "result", "error"}``.
    """

    def __init__(self, name: str, base_url: str, *, timeout_s: float = 30.0) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def list_definitions(self) -> list[ToolDefinition]:
        request = Request(
            f"{self.base_url}/api/tools",
            headers={"Accept": "application/json"},
            method="GET",
        )
        with urlopen(request, timeout=self.timeout_s) as response:
            body = response.read().decode("utf-8")
        remote_tools = json.loads(body)
        if not isinstance(remote_tools, list):
            raise ValueError(f"tool listing from {self.name} is not a list")
        definitions: list[ToolDefinition] = []
        for tool in remote_tools:
            if not isinstance(tool, dict) or not tool.get("name"):
                continue
            # Remote servers may already prefix their names; keep only the last segment.
            bare_name = str(tool["name"]).rsplit(":", 1)[-1]
            definitions.append(
                ToolDefinition(
                    name=bare_name,
                    description=tool.get("description") or "",
                    input_schema=tool.get("inputSchema") or {},
                )
            )
        LOGGER.info("http_tools_listed provider=%s count=%d", self.name, len(definitions))
        return definitions

    def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
        full_name = f"{self.name}:{tool_name}"
        request = Request(
            f"{self.base_url}/api/tools/execute",
            data=json.dumps({"toolName": tool_name, "arguments": arguments}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        started_at = time.monotonic()
        try:
            with urlopen(request, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
            data = json.loads(body)
        except HTTPError as exc:
            detail = exc.read().decode("utf-8") if exc.fp else str(exc)
            return self._failure(full_name, f"http_error:{exc.code}:{detail}")
        except (URLError, TimeoutError) as exc:
            return self._failure(full_name, f"connection_error:{exc}")
        except json.JSONDecodeError as exc:
            return self._failure(full_name, f"invalid_response:{exc}")
        if not isinstance(data, dict):
            return self._failure(full_name, "invalid_response:expected a JSON object")
        LOGGER.info(
            "http_tool_completed tool=%s success=%s elapsed_ms=%d",
            full_name,
            data.get("success"),
            int((time.monotonic() - started_at) * 1000),
        )
        if not data.get("success", False):
            return self._failure(full_name, str(data.get("error") or "tool reported failure"))
        return ToolResult.ok(full_name, data.get("result"))

    def _failure(self, full_name: str, error_text: str) -> ToolResult:
        LOGGER.warning(
            "http_tool_failed tool=%s error_code=%s error=%s",
            full_name,
            classify_tool_error(error_text),
            error_text,
        )
        return ToolResult.failure(full_name, error_text)
