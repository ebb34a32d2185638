__all__ = [
    "models",
    "message_log",
    "response_parser",
    "tool_registry",
    "sources",
    "state_machine",
    "orchestrator",
    "prompts",
    "config",
    "llm_provider",
    "tracing",
    "logging",
]
