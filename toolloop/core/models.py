from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Role(str, Enum):
    system = "system"
    user = "user"
    assistant = "assistant"


class StepKind(str, Enum):
    tool = "tool"
    final = "final"


class LoopState(str, Enum):
    awaiting_model = "awaiting_model"
    parsing = "parsing"
    executing_tools = "executing_tools"
    done = "done"
    error = "error"


class RunStatus(str, Enum):
    done = "done"
    error = "error"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.system, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.user, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.assistant, content=content)


class ToolCall(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("arguments", mode="before")
    @classmethod
    def _null_arguments(cls, value: Any) -> Any:
        return {} if value is None else value


class StepDecision(BaseModel):
    kind: StepKind
    tool_calls: List[ToolCall] = Field(default_factory=list)
    answer: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    tools_used_hint: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_kind(self) -> "StepDecision":
        if self.kind == StepKind.tool and not self.tool_calls:
            raise ValueError("tool step requires at least one tool call")
        if self.kind == StepKind.final and self.answer is None:
            raise ValueError("final step requires an answer")
        return self

    @classmethod
    def final(cls, answer: str, sources: Optional[List[str]] = None) -> "StepDecision":
        return cls(kind=StepKind.final, answer=answer, sources=sources or [])

    def to_wire(self) -> Dict[str, Any]:
        """Render the decision in the JSON shape the model is asked to produce."""
        wire: Dict[str, Any] = {"step": self.kind.value}
        if self.tool_calls:
            wire["tool_calls"] = [call.model_dump(mode="json") for call in self.tool_calls]
        if self.answer is not None:
            wire["answer"] = self.answer
        if self.sources:
            wire["sources"] = list(self.sources)
        if self.tools_used_hint:
            wire["toolsUsed"] = list(self.tools_used_hint)
        return wire


class ToolResult(BaseModel):
    success: bool
    value: Any = None
    error: Optional[str] = None
    tool_name: str
    produced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, tool_name: str, value: Any) -> "ToolResult":
        return cls(success=True, value=value, tool_name=tool_name)

    @classmethod
    def failure(cls, tool_name: str, error: str) -> "ToolResult":
        return cls(success=False, error=error, tool_name=tool_name)


class ToolDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ToolLoopResult(BaseModel):
    answer: str
    sources: List[str] = Field(default_factory=list)
    tools_used: List[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.done
    iterations: int = 0
    model_calls: int = 0
