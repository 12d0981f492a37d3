from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest

from chat_orchestrator.config import Settings
from chat_orchestrator.mcp_client import ToolExecutor
from chat_orchestrator.models import ChatRequest, SkillChunk
from chat_orchestrator.skills import Skill, SkillContext, SkillInput, SkillRegistry
from chat_orchestrator.task_manager import TaskManager


class ScriptedSkill(Skill):
    """Test double that replays a fixed list of chunks."""

    name = "scripted"
    kind = "text"
    description = "replays canned chunks"

    def __init__(
        self,
        chunks: list[SkillChunk] | None = None,
        *,
        raise_after: Exception | None = None,
        hang: bool = False,
    ) -> None:
        self.chunks = chunks if chunks is not None else [SkillChunk.text("Hello"), SkillChunk.text(" there"), SkillChunk.done()]
        self.raise_after = raise_after
        self.hang = hang
        self.calls: list[tuple[SkillInput, SkillContext]] = []
        self.closed = False

    async def execute(self, input: SkillInput, context: SkillContext) -> AsyncIterator[SkillChunk]:
        self.calls.append((input, context))
        try:
            for chunk in self.chunks:
                yield chunk
            if self.raise_after is not None:
                raise self.raise_after
            if self.hang:
                await asyncio.Event().wait()
        finally:
            self.closed = True


def registry_of(skill: Skill) -> SkillRegistry:
    return SkillRegistry({kind: skill for kind in ("text", "multimodal", "file", "tool")})


def chat_request(content: str = "hi", **kwargs: Any) -> ChatRequest:
    return ChatRequest.model_validate({"messages": [{"role": "user", "content": content}], **kwargs})


@pytest.fixture
def env() -> Settings:
    return Settings(
        max_tasks=100,
        step_timeout_seconds=1.0,
        tool_timeout_seconds=1.0,
        retry_max_attempts=1,
        retry_base_delay=0.0,
        retry_jitter=0.0,
        text_api_key="test-text-key",
        text_base_url="https://text.example.test",
        vision_api_key="test-vision-key",
        vision_base_url="https://vision.example.test/v1",
        log_level="DEBUG",
    )


@pytest.fixture
def skill() -> ScriptedSkill:
    return ScriptedSkill()


@pytest.fixture
def manager(env: Settings, skill: ScriptedSkill) -> TaskManager:
    return TaskManager(env, skills=registry_of(skill), tool_executor=ToolExecutor(config=env))
