"""
Skills are the generation strategies a task's skill step delegates to.

Every skill exposes execute(input, context) -> async iterator of SkillChunk. Failures
are reported as an `error` chunk and never raised out of the iterator.
"""
from __future__ import annotations
import json
import logging
import re
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .errors import WorkerError
from .llm_client import ChatCompletionClient
from .mcp_client import ToolExecutor
from .models import ChatMessage, ChatRequest, FileData, ImageData, SkillChunk, ToolInvocation

logger = logging.getLogger(__name__)

SkillKind = Literal["text", "multimodal", "file", "tool"]

MAX_TOOL_CALLS_PER_ROUND = 5
_TOOL_TAG_RE = re.compile(r"<tool>(.*?)</tool>", re.DOTALL)


class SkillInput(BaseModel):
    messages: List[ChatMessage]
    images: List[ImageData] = Field(default_factory=list)
    files: List[FileData] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_request(cls, request: ChatRequest) -> "SkillInput":
        return cls(
            messages=request.messages,
            images=request.images,
            files=request.files,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )


@dataclass
class SkillContext:
    task_id: str
    step_id: str
    environment: Settings
    tool_executor: ToolExecutor


def select_skill_kind(request: ChatRequest) -> SkillKind:
    """Same precedence as task type: images > files > tools > plain text."""
    if request.images:
        return "multimodal"
    if request.files:
        return "file"
    if request.enable_tools:
        return "tool"
    return "text"


class Skill(ABC):
    name: str
    kind: SkillKind
    description: str

    @abstractmethod
    def execute(self, input: SkillInput, context: SkillContext) -> AsyncIterator[SkillChunk]:
        ...

    def describe(self) -> Dict[str, str]:
        return {"name": self.name, "kind": self.kind, "description": self.description}


class ChatCompletionSkill(Skill):
    """Shared streaming behaviour for skills backed by a chat completions endpoint."""

    provider = "upstream"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.transport = transport

    @abstractmethod
    def client(self, env: Settings) -> ChatCompletionClient:
        ...

    def build_messages(self, input: SkillInput) -> List[Dict[str, Any]]:
        return [{"role": m.role, "content": m.content} for m in input.messages]

    async def execute(self, input: SkillInput, context: SkillContext) -> AsyncIterator[SkillChunk]:
        stream = self.client(context.environment).stream(
            self.build_messages(input),
            temperature=input.temperature,
            max_tokens=input.max_tokens,
        )
        try:
            async with aclosing(stream):
                async for text in stream:
                    yield SkillChunk.text(text)
        except WorkerError as e:
            logger.warning("%s failed task=%s code=%s error=%s", self.name, context.task_id, e.code, e.message)
            yield SkillChunk.failure(e.message)
            return
        except Exception as e:  # noqa: BLE001
            logger.exception("%s crashed task=%s", self.name, context.task_id)
            yield SkillChunk.failure(str(e))
            return
        yield SkillChunk.done()


class TextSkill(ChatCompletionSkill):
    name = "text-chat"
    kind: SkillKind = "text"
    description = "Plain text conversation"
    provider = "text"

    def client(self, env: Settings) -> ChatCompletionClient:
        return ChatCompletionClient(
            provider=self.provider,
            base_url=env.text_base_url,
            api_key=env.text_api_key,
            model=env.text_model,
            config=env,
            transport=self.transport,
        )


class MultimodalSkill(ChatCompletionSkill):
    name = "multimodal-chat"
    kind: SkillKind = "multimodal"
    description = "Image and text conversation"
    provider = "vision"

    def client(self, env: Settings) -> ChatCompletionClient:
        return ChatCompletionClient(
            provider=self.provider,
            base_url=env.vision_base_url,
            api_key=env.vision_api_key,
            model=env.vision_model,
            config=env,
            transport=self.transport,
        )

    def build_messages(self, input: SkillInput) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for m in input.messages:
            if m.role == "user" and input.images:
                parts: List[Dict[str, Any]] = [
                    {"type": "image_url", "image_url": {"url": img.data_url()}} for img in input.images
                ]
                parts.append({"type": "text", "text": m.content or "Describe this image."})
                out.append({"role": m.role, "content": parts})
            else:
                out.append({"role": m.role, "content": m.content})
        return out


class FileSkill(Skill):
    """Inlines text file contents into the prompt, then answers with the text skill."""

    name = "file-chat"
    kind: SkillKind = "file"
    description = "Conversation about uploaded text files"

    SYSTEM_PROMPT = (
        "You are a file analysis assistant. The user uploaded text files; "
        "answer their question using the file contents."
    )

    def __init__(self, text: TextSkill) -> None:
        self.text = text

    def build_messages(self, input: SkillInput) -> List[ChatMessage]:
        blocks = []
        for f in input.files:
            ext = f.name.rsplit(".", 1)[-1] if "." in f.name else ""
            blocks.append(f"### File: {f.name}\n```{ext}\n{f.content}\n```")
        question = next((m.content for m in reversed(input.messages) if m.role == "user"), "Please analyse these files.")
        return [
            ChatMessage(role="system", content=self.SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content="Here are the files I uploaded:\n\n" + "\n\n".join(blocks) + f"\n\nMy question: {question}",
            ),
        ]

    async def execute(self, input: SkillInput, context: SkillContext) -> AsyncIterator[SkillChunk]:
        logger.info("processing files task=%s count=%d", context.task_id, len(input.files))
        text_input = input.model_copy(update={"messages": self.build_messages(input), "files": []})
        async with aclosing(self.text.execute(text_input, context)) as chunks:
            async for chunk in chunks:
                yield chunk


def extract_tool_calls(text: str) -> List[ToolInvocation]:
    calls: List[ToolInvocation] = []
    for raw in _TOOL_TAG_RE.findall(text):
        try:
            calls.append(ToolInvocation.model_validate(json.loads(raw)))
        except (json.JSONDecodeError, PydanticValidationError):
            logger.debug("ignoring malformed tool request: %.80s", raw)
        if len(calls) >= MAX_TOOL_CALLS_PER_ROUND:
            break
    return calls


class _ToolTagFilter:
    """Drops <tool>...</tool> spans from streamed text, holding back a partial tag split across chunks."""

    OPEN = "<tool>"
    CLOSE = "</tool>"

    def __init__(self) -> None:
        self._buf = ""
        self._inside = False

    def feed(self, text: str) -> str:
        self._buf += text
        out: List[str] = []
        while True:
            if self._inside:
                end = self._buf.find(self.CLOSE)
                if end < 0:
                    self._buf = self._buf[-(len(self.CLOSE) - 1):]
                    break
                self._buf = self._buf[end + len(self.CLOSE):]
                self._inside = False
                continue
            start = self._buf.find(self.OPEN)
            if start < 0:
                keep = _partial_prefix_len(self._buf, self.OPEN)
                out.append(self._buf[:len(self._buf) - keep])
                self._buf = self._buf[len(self._buf) - keep:]
                break
            out.append(self._buf[:start])
            self._buf = self._buf[start + len(self.OPEN):]
            self._inside = True
        return "".join(out)

    def flush(self) -> str:
        # an unterminated tool span is dropped
        rest = "" if self._inside else self._buf
        self._buf, self._inside = "", False
        return rest


def _partial_prefix_len(text: str, tag: str) -> int:
    for n in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:n]):
            return n
    return 0


class ToolSkill(Skill):
    """
    Advertises the tool catalogue to the model, runs the tools it asks for and streams
    a follow-up answer that sees the results. Bounded by environment.max_tool_rounds.
    """

    name = "tool-chat"
    kind: SkillKind = "tool"
    description = "Conversation with tool use (calculator, clock, JSON, sandboxed code)"

    def __init__(self, text: TextSkill) -> None:
        self.text = text

    async def execute(self, input: SkillInput, context: SkillContext) -> AsyncIterator[SkillChunk]:
        executor = context.tool_executor
        prompt = executor.tools_prompt()
        messages = [ChatMessage(role="system", content=prompt), *input.messages] if prompt else list(input.messages)
        rounds = max(0, context.environment.max_tool_rounds)

        shown = False
        separate = False
        for round_no in range(rounds + 1):
            reply: List[str] = []
            visible = _ToolTagFilter()
            async with aclosing(self.text.execute(input.model_copy(update={"messages": messages}), context)) as chunks:
                async for chunk in chunks:
                    if chunk.type == "error":
                        yield chunk
                        return
                    if chunk.type == "content" and chunk.content:
                        reply.append(chunk.content)
                        out = visible.feed(chunk.content)
                        if out:
                            yield SkillChunk.text("\n\n" + out if separate else out)
                            shown, separate = True, False
            out = visible.flush()
            if out:
                yield SkillChunk.text("\n\n" + out if separate else out)
                shown, separate = True, False

            text = "".join(reply)
            calls = extract_tool_calls(text)
            if not calls or round_no == rounds:
                break

            logger.info("running tools task=%s round=%d tools=%s", context.task_id, round_no + 1, [c.tool for c in calls])
            results = await executor.execute_many(calls)
            payload = json.dumps([r.model_dump(exclude_none=True) for r in results], ensure_ascii=False, default=str)
            messages = [
                *messages,
                ChatMessage(role="assistant", content=text),
                ChatMessage(role="user", content=f"Tool results:\n{payload}\n\nContinue answering using these results."),
            ]
            separate = shown

        yield SkillChunk.done()


class SkillRegistry:
    def __init__(self, skills: Dict[SkillKind, Skill]) -> None:
        self._skills = dict(skills)

    def get(self, kind: SkillKind) -> Skill:
        return self._skills[kind]

    def select(self, request: ChatRequest) -> Skill:
        return self.get(select_skill_kind(request))

    def list(self) -> List[Skill]:
        return list(self._skills.values())


def default_skills(transport: Optional[httpx.AsyncBaseTransport] = None) -> SkillRegistry:
    text = TextSkill(transport)
    return SkillRegistry({
        "text": text,
        "multimodal": MultimodalSkill(transport),
        "file": FileSkill(text),
        "tool": ToolSkill(text),
    })
