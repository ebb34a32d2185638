from __future__ import annotations

import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

from . import logging as core_logging
from .models import ToolDefinition, ToolResult
from toolloop.framework.tool_runtime import ToolProvider, classify_tool_error, sanitize_payload

LOGGER = core_logging.get_logger("tool_registry")

PROVIDER_SEPARATOR = ":"


class ToolRegistry:
    """Routes ``provider:tool`` names to the provider registered under ``provider``."""

    def __init__(self, providers: Iterable[ToolProvider] = ()) -> None:
        self._providers: Dict[str, ToolProvider] = {}
        self._definition_cache: Dict[str, List[ToolDefinition]] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ToolProvider) -> None:
        name = getattr(provider, "name", "")
        if not name or PROVIDER_SEPARATOR in name:
            raise ValueError(f"invalid provider name: {name!r}")
        if name in self._providers:
            raise ValueError(f"provider already registered: {name}")
        self._providers[name] = provider
        LOGGER.info("tool_provider_registered", provider=name)

    def known_providers(self) -> List[str]:
        return list(self._providers)

    def execute(self, full_name: str, arguments: Optional[Mapping[str, Any]] = None) -> ToolResult:
        payload = dict(arguments or {})
        provider_name, separator, tool_name = (full_name or "").partition(PROVIDER_SEPARATOR)
        if not separator or not provider_name or not tool_name:
            error = (
                "invalid_tool_name: expected 'provider:tool', "
                f"got {full_name!r}. Known providers: {self._known_providers_text()}"
            )
            LOGGER.warning(
                "tool_name_invalid",
                tool_name=full_name,
                error_code=classify_tool_error(error),
            )
            return ToolResult.failure(full_name or "", error)

        provider = self._providers.get(provider_name)
        if provider is None:
            error = (
                f"unknown_provider: {provider_name!r} is not registered. "
                f"Known providers: {self._known_providers_text()}"
            )
            LOGGER.warning(
                "tool_provider_not_found",
                tool_name=full_name,
                provider=provider_name,
                known_providers=self.known_providers(),
            )
            return ToolResult.failure(full_name, error)

        LOGGER.info(
            "tool_routed",
            tool_name=full_name,
            provider=provider_name,
            arguments=sanitize_payload(payload),
        )
        result = provider.execute(tool_name, payload)
        if not result.tool_name:
            result = result.model_copy(update={"tool_name": full_name})
        return result

    def definitions(self) -> List[ToolDefinition]:
        collected: List[ToolDefinition] = []
        for name, provider in list(self._providers.items()):
            collected.extend(self._provider_definitions(name, provider))
        return collected

    def invalidate(self, provider_name: str) -> None:
        self._definition_cache.pop(provider_name, None)
        LOGGER.info("tool_definitions_invalidated", provider=provider_name)

    def invalidate_all(self) -> None:
        self._definition_cache.clear()
        LOGGER.info("tool_definitions_invalidated", provider="*")

    def _provider_definitions(self, name: str, provider: ToolProvider) -> List[ToolDefinition]:
        cached = self._definition_cache.get(name)
        if cached is not None:
            return list(cached)
        try:
            fetched = [_qualify(name, definition) for definition in provider.list_definitions()]
        except Exception:  # noqa: BLE001
            LOGGER.exception("tool_definitions_fetch_failed", provider=name)
            return []
        # First writer wins when several runs populate the cache at once.
        stored = self._definition_cache.setdefault(name, fetched)
        LOGGER.info("tool_definitions_cached", provider=name, count=len(stored))
        return list(stored)

    def _known_providers_text(self) -> str:
        return ", ".join(self._providers) or "none"


def _qualify(provider_name: str, definition: ToolDefinition) -> ToolDefinition:
    prefix = f"{provider_name}{PROVIDER_SEPARATOR}"
    if definition.name.startswith(prefix):
        return definition
    return definition.model_copy(update={"name": prefix + definition.name})


def parse_provider_urls(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``name=url,name=url`` into an ordered mapping; malformed entries are skipped."""
    providers: Dict[str, str] = {}
    for entry in (raw or "").split(","):
        name, separator, url = entry.strip().partition("=")
        if not separator or not name.strip() or not url.strip():
            continue
        providers[name.strip()] = url.strip()
    return providers


def default_registry(
    *,
    include_native: Optional[bool] = None,
    http_providers: Optional[Mapping[str, str]] = None,
    mcp_providers: Optional[Mapping[str, str]] = None,
    timeout_s: Optional[float] = None,
) -> ToolRegistry:
    from toolloop.tools.http_provider import HttpToolProvider
    from toolloop.tools.mcp_provider import McpToolProvider
    from toolloop.tools.native_tools import NativeToolProvider

    if include_native is None:
        include_native = os.getenv("TOOL_PROVIDERS_NATIVE", "true").lower() == "true"
    if http_providers is None:
        http_providers = parse_provider_urls(os.getenv("TOOL_PROVIDERS_HTTP"))
    if mcp_providers is None:
        mcp_providers = parse_provider_urls(os.getenv("TOOL_PROVIDERS_MCP"))
    if timeout_s is None:
        timeout_s = _resolve_provider_timeout_s()

    providers: List[ToolProvider] = []
    if include_native:
        providers.append(NativeToolProvider())
    for name, url in http_providers.items():
        providers.append(HttpToolProvider(name, url, timeout_s=timeout_s))
    for name, url in mcp_providers.items():
        providers.append(McpToolProvider(name, url, timeout_s=timeout_s))
    return ToolRegistry(providers)


def _resolve_provider_timeout_s() -> float:
    env_timeout = os.getenv("TOOL_PROVIDER_TIMEOUT_S")
    if env_timeout:
        try:
            return max(1.0, float(env_timeout))
        except ValueError:
            return 30.0
    return 30.0
