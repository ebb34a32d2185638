from __future__ import annotations

import structlog
from structlog.testing import capture_logs

from toolloop.core import logging as core_logging
from toolloop.core.llm_provider import MockModelClient
from toolloop.core.orchestrator import ToolLoopOrchestrator
from toolloop.core.tool_registry import ToolRegistry


def test_log_event_emits_payload():
    logger = core_logging.get_logger("tool_loop_test")
    with capture_logs() as captured:
        core_logging.log_event(logger, "tool_loop_event", {"run_id": "r1", "count": 2})
    assert len(captured) == 1
    entry = captured[0]
    assert entry["event"] == "tool_loop_event"
    assert entry["log_level"] == "info"
    assert entry["run_id"] == "r1"
    assert entry["count"] == 2


def test_run_logs_iterations_and_finish():
    orchestrator = ToolLoopOrchestrator(MockModelClient("hi"), ToolRegistry())
    with capture_logs() as captured:
        orchestrator.ask("hello")
    events = [entry["event"] for entry in captured]
    assert "tool_loop_iteration" in events
    finished = [entry for entry in captured if entry["event"] == "tool_loop_finished"]
    assert finished[0]["status"] == "done"
    assert finished[0]["model_calls"] == 1


def test_configure_logging_installs_json_pipeline():
    try:
        core_logging.configure_logging("tool-loop")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    finally:
        structlog.reset_defaults()
