from __future__ import annotations

import contextvars
import json
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from . import logging as core_logging
from . import tracing as core_tracing
from .config import LoopSettings, _parse_optional_float, _parse_optional_int
from .llm_provider import ModelClient, resolve_model_client
from .message_log import MessageLog
from .models import (
    LoopState,
    Message,
    RunStatus,
    StepDecision,
    StepKind,
    ToolCall,
    ToolLoopResult,
    ToolResult,
)
from .prompts import (
    JSON_CORRECTION_PROMPT,
    build_initial_messages,
    format_tool_result_value,
    format_tool_results,
    message,
)
from .response_parser import ParseFailure, ResponseParser
from .sources import SourceSet, append_citations, extract_sources
from .state_machine import TERMINAL_STATES, transition
from .tool_registry import ToolRegistry, default_registry
from toolloop.framework.tool_runtime import classify_tool_error, sanitize_payload

logger = core_logging.get_logger("tool_loop")


class _RunAborted(Exception):
    def __init__(self, message_key: str) -> None:
        super().__init__(message_key)
        self.message_key = message_key


@dataclass
class RunContext:
    """Mutable state of a single ``run_tool_loop`` invocation."""

    run_id: str
    log: MessageLog
    temperature: float
    state: LoopState = LoopState.awaiting_model
    sources: SourceSet = field(default_factory=SourceSet)
    tools_used: List[str] = field(default_factory=list)
    iterations: int = 0
    model_calls: int = 0

    def move_to(self, new_state: LoopState) -> None:
        self.state = transition(self.state, new_state)

    def record_tool(self, name: str) -> None:
        if name and name not in self.tools_used:
            self.tools_used.append(name)


class ToolLoopOrchestrator:
    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        parser: Optional[ResponseParser] = None,
        settings: Optional[LoopSettings] = None,
    ) -> None:
        self.model = model
        self.registry = registry
        self.parser = parser or ResponseParser()
        self.settings = settings or LoopSettings()

    def ask(
        self,
        user_message: str,
        instructions: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> ToolLoopResult:
        try:
            messages = build_initial_messages(user_message, self.registry.definitions(), instructions)
        except Exception:  # noqa: BLE001
            context = self._new_context(temperature)
            logger.exception("tool_loop_prompt_build_failed", run_id=context.run_id)
            return self._fail(context, "internal_error")
        return self.run_tool_loop(messages, temperature=temperature)

    def run_tool_loop(
        self,
        initial_messages: Iterable[Message],
        temperature: Optional[float] = None,
    ) -> ToolLoopResult:
        context = self._new_context(temperature)
        started_at = time.monotonic()
        with core_tracing.start_span(
            "tool_loop.run",
            attributes={
                "tool_loop.run_id": context.run_id,
                "tool_loop.max_iterations": self.settings.max_iterations,
            },
        ) as span:
            try:
                context.log.extend(initial_messages)
                result = self._run(context)
            except _RunAborted as exc:
                result = self._fail(context, exc.message_key)
            except Exception:  # noqa: BLE001
                logger.exception("tool_loop_internal_error", run_id=context.run_id)
                result = self._fail(context, "internal_error")
            core_tracing.set_span_attributes(
                span,
                {
                    "tool_loop.status": result.status.value,
                    "tool_loop.iterations": result.iterations,
                    "tool_loop.model_calls": result.model_calls,
                },
            )
        core_logging.log_event(
            logger,
            "tool_loop_finished",
            {
                "run_id": context.run_id,
                "status": result.status.value,
                "iterations": result.iterations,
                "model_calls": result.model_calls,
                "tools_used": result.tools_used,
                "sources": len(result.sources),
                "elapsed_ms": int((time.monotonic() - started_at) * 1000),
            },
        )
        return result

    def _new_context(self, temperature: Optional[float]) -> RunContext:
        return RunContext(
            run_id=str(uuid.uuid4()),
            log=MessageLog(),
            temperature=self.settings.temperature if temperature is None else temperature,
        )

    def _run(self, context: RunContext) -> ToolLoopResult:
        while context.iterations < self.settings.max_iterations:
            context.iterations += 1
            logger.info(
                "tool_loop_iteration",
                run_id=context.run_id,
                iteration=context.iterations,
                messages=len(context.log),
            )
            raw_text = self._call_model(context)
            context.move_to(LoopState.parsing)
            decision = self._parse_with_correction(context, raw_text)
            if decision.kind == StepKind.final:
                return self._finish(context, decision)
            context.move_to(LoopState.executing_tools)
            self._execute_step(context, decision)
            context.move_to(LoopState.awaiting_model)

        logger.warning(
            "tool_loop_max_iterations",
            run_id=context.run_id,
            max_iterations=self.settings.max_iterations,
            tools_used=context.tools_used,
        )
        raise _RunAborted("too_many_steps")

    def _call_model(self, context: RunContext) -> str:
        context.model_calls += 1
        try:
            with core_tracing.start_span(
                "tool_loop.model_call",
                attributes={
                    "tool_loop.run_id": context.run_id,
                    "tool_loop.iteration": context.iterations,
                    "tool_loop.messages": len(context.log),
                },
            ):
                return self.model.complete(
                    context.log.snapshot(),
                    context.temperature,
                    self.settings.max_tokens,
                )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "tool_loop_model_call_failed",
                run_id=context.run_id,
                iteration=context.iterations,
                error_type=exc.__class__.__name__,
            )
            raise _RunAborted("model_unavailable") from exc

    def _parse_with_correction(self, context: RunContext, raw_text: str) -> StepDecision:
        outcome = self.parser.parse(raw_text)
        if not isinstance(outcome, ParseFailure):
            return outcome
        logger.warning(
            "tool_loop_parse_retry",
            run_id=context.run_id,
            iteration=context.iterations,
            reason=outcome.reason,
        )
        context.log.append_assistant(outcome.raw_text)
        context.log.append_user(JSON_CORRECTION_PROMPT)
        retried = self.parser.parse(self._call_model(context))
        if isinstance(retried, ParseFailure):
            logger.error(
                "tool_loop_parse_failed",
                run_id=context.run_id,
                iteration=context.iterations,
                reason=retried.reason,
            )
            raise _RunAborted("parse_failed")
        return retried

    def _finish(self, context: RunContext, decision: StepDecision) -> ToolLoopResult:
        context.sources.update(decision.sources)
        header = message("sources_header", self.settings.locale)
        answer = append_citations(decision.answer or "", context.sources, header)
        for hint in decision.tools_used_hint:
            context.record_tool(hint)
        context.move_to(LoopState.done)
        return ToolLoopResult(
            answer=answer,
            sources=context.sources.to_list(),
            tools_used=list(context.tools_used),
            status=RunStatus.done,
            iterations=context.iterations,
            model_calls=context.model_calls,
        )

    def _fail(self, context: RunContext, message_key: str) -> ToolLoopResult:
        if context.state not in TERMINAL_STATES:
            context.move_to(LoopState.error)
        return ToolLoopResult(
            answer=message(message_key, self.settings.locale),
            sources=[],
            tools_used=list(context.tools_used),
            status=RunStatus.error,
            iterations=context.iterations,
            model_calls=context.model_calls,
        )

    def _execute_step(self, context: RunContext, decision: StepDecision) -> None:
        context.log.append_assistant(json.dumps(decision.to_wire(), ensure_ascii=False))
        results = self._execute_calls(context, decision.tool_calls)
        entries = []
        for call, result in zip(decision.tool_calls, results):
            context.record_tool(call.name)
            if result.success:
                if call.name in self.settings.source_tools:
                    extract_sources(result.value, context.sources, self.settings.source_field)
                entries.append((call.name, format_tool_result_value(result.value)))
            else:
                entries.append((call.name, f"ERROR: {result.error}"))
        context.log.append_user(format_tool_results(entries))

    def _execute_calls(self, context: RunContext, calls: Sequence[ToolCall]) -> List[ToolResult]:
        if self.settings.parallel_tool_calls and len(calls) > 1:
            workers = min(self.settings.max_tool_workers, len(calls))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                # One context copy per call keeps tool spans under the run span.
                futures = [
                    pool.submit(contextvars.copy_context().run, self._execute_one, context, call)
                    for call in calls
                ]
                return [future.result() for future in futures]
        return [self._execute_one(context, call) for call in calls]

    def _execute_one(self, context: RunContext, call: ToolCall) -> ToolResult:
        started_at = time.monotonic()
        with core_tracing.start_span(
            "tool_loop.tool_call",
            attributes={"tool_loop.run_id": context.run_id, "tool.name": call.name},
        ) as span:
            try:
                result = self.registry.execute(call.name, call.arguments)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "tool_execution_raised",
                    run_id=context.run_id,
                    tool_name=call.name,
                    arguments=sanitize_payload(call.arguments),
                )
                result = ToolResult.failure(call.name, f"{exc.__class__.__name__}: {exc}")
            core_tracing.set_span_attributes(span, {"tool.success": result.success})
        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        if result.success:
            logger.info(
                "tool_executed",
                run_id=context.run_id,
                tool_name=call.name,
                elapsed_ms=elapsed_ms,
            )
        else:
            logger.warning(
                "tool_executed",
                run_id=context.run_id,
                tool_name=call.name,
                elapsed_ms=elapsed_ms,
                error=result.error,
                error_code=classify_tool_error(result.error or ""),
            )
        return result


def build_orchestrator_from_env(registry: Optional[ToolRegistry] = None) -> ToolLoopOrchestrator:
    core_tracing.configure_tracing_from_env()
    settings = LoopSettings.from_env()
    model = resolve_model_client(
        os.getenv("LLM_PROVIDER", "mock"),
        api_key=os.getenv("OPENAI_API_KEY"),
        model=os.getenv("OPENAI_MODEL"),
        base_url=os.getenv("OPENAI_BASE_URL"),
        timeout_s=_parse_optional_float(os.getenv("OPENAI_TIMEOUT_S")),
        max_retries=_parse_optional_int(os.getenv("OPENAI_MAX_RETRIES")),
    )
    return ToolLoopOrchestrator(
        model=model,
        registry=registry if registry is not None else default_registry(),
        settings=settings,
    )
