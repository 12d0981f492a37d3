from __future__ import annotations
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Literal, Dict, List, Any
from datetime import datetime, timezone

from .errors import StateTransitionError
from .ids import new_id

TaskType = Literal["chat", "image", "code", "file"]
TaskStatus = Literal["pending", "running", "completed", "failed"]
StepType = Literal["plan", "skill", "mcp", "respond"]
StepStatus = Literal["running", "completed", "failed"]
EventType = Literal["task", "step", "content", "error", "complete"]
ChunkType = Literal["content", "error", "complete"]

TERMINAL_STATUSES = ("completed", "failed")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(min_length=1)
    name: Optional[str] = None


class ImageData(BaseModel):
    id: Optional[str] = None
    base64: str = Field(min_length=1)
    mime_type: str = Field(default="image/png", validation_alias=AliasChoices("mime_type", "mimeType"))
    description: Optional[str] = None

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class FileData(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    content: str
    mime_type: str = Field(default="text/plain", validation_alias=AliasChoices("mime_type", "mimeType"))
    size: Optional[int] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(min_length=1)
    images: List[ImageData] = Field(default_factory=list)
    files: List[FileData] = Field(default_factory=list)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1, validation_alias=AliasChoices("max_tokens", "maxTokens"))
    stream: bool = True
    enable_tools: bool = Field(default=False, validation_alias=AliasChoices("enable_tools", "enableTools"))
    model: Optional[str] = None

    @field_validator("images", "files", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("images", mode="before")
    @classmethod
    def _images_from_strings(cls, v: Any) -> Any:
        # bare base64 payloads and data: URLs are accepted alongside objects
        if not isinstance(v, list):
            return v
        out = []
        for item in v:
            if isinstance(item, str) and item.startswith("data:") and ";base64," in item:
                mime, _, data = item[5:].partition(";base64,")
                out.append({"base64": data, "mime_type": mime or "image/png"})
            elif isinstance(item, str):
                out.append({"base64": item})
            else:
                out.append(item)
        return out

    @property
    def last_message(self) -> str:
        return self.messages[-1].content if self.messages else ""


class Step(BaseModel):
    id: str = Field(default_factory=new_id)
    task_id: str
    type: StepType
    status: StepStatus = "running"
    name: str
    description: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def _finish(self, status: StepStatus) -> None:
        if self.status != "running":
            raise StateTransitionError(
                f"step {self.id} is already {self.status}",
                details={"step_id": self.id, "status": self.status, "target": status},
            )
        self.status = status
        self.completed_at = utcnow()

    def complete(self, output: Optional[Dict[str, Any]] = None) -> None:
        self._finish("completed")
        self.output = output

    def fail(self, error: str) -> None:
        self._finish("failed")
        self.error = error


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    type: TaskType = "chat"
    status: TaskStatus = "pending"
    user_message: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    steps: List[Step] = Field(default_factory=list)
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = utcnow()

    def _transition(self, allowed_from: TaskStatus, target: TaskStatus) -> None:
        if self.status != allowed_from:
            raise StateTransitionError(
                f"task {self.id} cannot move from {self.status} to {target}",
                details={"task_id": self.id, "status": self.status, "target": target},
            )
        self.status = target
        self.touch()

    def add_step(self, step: Step) -> Step:
        if self.is_terminal:
            raise StateTransitionError(f"task {self.id} is already {self.status}")
        self.steps.append(step)
        self.touch()
        return step

    def mark_running(self) -> None:
        self._transition("pending", "running")

    def mark_completed(self, result: str) -> None:
        self._transition("running", "completed")
        self.result = result
        self.error = None

    def mark_failed(self, error: str) -> None:
        self._transition("running", "failed")
        self.error = error
        self.result = None

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class TaskEvent(BaseModel):
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)


class SkillChunk(BaseModel):
    type: ChunkType
    content: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def text(cls, content: str) -> "SkillChunk":
        return cls(type="content", content=content)

    @classmethod
    def failure(cls, error: str) -> "SkillChunk":
        return cls(type="error", error=error)

    @classmethod
    def done(cls) -> "SkillChunk":
        return cls(type="complete")


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ToolInvocation(BaseModel):
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("arguments", "args"))


class ToolResult(BaseModel):
    tool: str
    ok: bool = True
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    cached: bool = False
    latency_ms: Optional[int] = None
