from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from chat_orchestrator.config import Settings
from chat_orchestrator.mcp_client import ToolExecutor
from chat_orchestrator.models import SkillChunk
from chat_orchestrator.skills import (
    SkillContext,
    SkillInput,
    _ToolTagFilter,
    default_skills,
    extract_tool_calls,
    select_skill_kind,
)

from conftest import chat_request


def sse_body(*parts: str) -> bytes:
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': p}}]})}\n\n" for p in parts]
    return ("".join(lines) + "data: [DONE]\n\n").encode()


class Upstream:
    """Records requests and answers each one with the next scripted response."""

    def __init__(self, *responses: Callable[[], httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        make = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return make()

    def body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def streaming(*parts: str) -> Callable[[], httpx.Response]:
    return lambda: httpx.Response(200, content=sse_body(*parts), headers={"content-type": "text/event-stream"})


def context_for(env: Settings) -> SkillContext:
    return SkillContext(task_id="task-1", step_id="step-1", environment=env, tool_executor=ToolExecutor(config=env))


async def collect(skill, request, env: Settings) -> List[SkillChunk]:
    return [c async for c in skill.execute(SkillInput.from_request(request), context_for(env))]


def test_skill_selection_precedence() -> None:
    image = {"base64": "aGk="}
    doc = {"name": "a.txt", "content": "x"}

    assert select_skill_kind(chat_request()) == "text"
    assert select_skill_kind(chat_request(enableTools=True)) == "tool"
    assert select_skill_kind(chat_request(files=[doc], enableTools=True)) == "file"
    assert select_skill_kind(chat_request(images=[image], files=[doc])) == "multimodal"


@pytest.mark.asyncio
async def test_text_skill_streams_deltas(env: Settings) -> None:
    upstream = Upstream(streaming("Hello", ", ", "world"))
    skills = default_skills(upstream.transport)

    chunks = await collect(skills.get("text"), chat_request("hi", temperature=0.2, maxTokens=50), env)

    assert [c.content for c in chunks if c.type == "content"] == ["Hello", ", ", "world"]
    assert chunks[-1].type == "complete"

    request = upstream.requests[0]
    assert str(request.url) == "https://text.example.test/chat/completions"
    assert request.headers["authorization"] == "Bearer test-text-key"
    body = upstream.body()
    assert body["stream"] is True
    assert body["model"] == env.text_model
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 50
    assert body["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_missing_api_key_is_reported_as_error_chunk(env: Settings) -> None:
    env.text_api_key = ""
    upstream = Upstream(streaming("never"))

    chunks = await collect(default_skills(upstream.transport).get("text"), chat_request(), env)

    assert len(chunks) == 1
    assert chunks[0].type == "error"
    assert "API key not configured" in chunks[0].error
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_upstream_http_error_becomes_error_chunk(env: Settings) -> None:
    upstream = Upstream(lambda: httpx.Response(401, text="bad key"))

    chunks = await collect(default_skills(upstream.transport).get("text"), chat_request(), env)

    assert [c.type for c in chunks] == ["error"]
    assert "401" in chunks[0].error
    assert len(upstream.requests) == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_before_streaming(env: Settings) -> None:
    env.retry_max_attempts = 3
    upstream = Upstream(
        lambda: httpx.Response(503, text="busy"),
        lambda: httpx.Response(500, text="oops"),
        streaming("recovered"),
    )

    chunks = await collect(default_skills(upstream.transport).get("text"), chat_request(), env)

    assert [c.content for c in chunks if c.type == "content"] == ["recovered"]
    assert chunks[-1].type == "complete"
    assert len(upstream.requests) == 3


@pytest.mark.asyncio
async def test_stream_error_payload_ends_with_error_chunk(env: Settings) -> None:
    body = sse_body("partial")[: -len(b"data: [DONE]\n\n")] + b'data: {"error": {"message": "overloaded"}}\n\n'
    upstream = Upstream(lambda: httpx.Response(200, content=body))

    chunks = await collect(default_skills(upstream.transport).get("text"), chat_request(), env)

    assert [c.type for c in chunks] == ["content", "error"]
    assert "overloaded" in chunks[-1].error


@pytest.mark.asyncio
async def test_multimodal_skill_sends_image_parts(env: Settings) -> None:
    upstream = Upstream(streaming("a cat"))
    request = chat_request("what is this?", images=[{"base64": "aGVsbG8=", "mimeType": "image/jpeg"}])

    chunks = await collect(default_skills(upstream.transport).get("multimodal"), request, env)

    assert chunks[0].content == "a cat"
    assert str(upstream.requests[0].url) == "https://vision.example.test/v1/chat/completions"
    assert upstream.requests[0].headers["authorization"] == "Bearer test-vision-key"
    content = upstream.body()["messages"][0]["content"]
    assert content[0] == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,aGVsbG8="}}
    assert content[-1] == {"type": "text", "text": "what is this?"}


@pytest.mark.asyncio
async def test_file_skill_inlines_files(env: Settings) -> None:
    upstream = Upstream(streaming("two lines"))
    request = chat_request("summarise", files=[{"name": "notes.md", "content": "# Title\nbody"}])

    chunks = await collect(default_skills(upstream.transport).get("file"), request, env)

    assert chunks[0].content == "two lines"
    messages = upstream.body()["messages"]
    assert messages[0]["role"] == "system"
    assert "### File: notes.md" in messages[1]["content"]
    assert "```md\n# Title\nbody\n```" in messages[1]["content"]
    assert messages[1]["content"].endswith("My question: summarise")


def test_extract_tool_calls() -> None:
    text = (
        'Let me check. <tool>{"tool": "calculate", "arguments": {"expression": "1+1"}}</tool> '
        "<tool>not json</tool>"
        '<tool>{"tool": "current_time", "args": {"timezone": "UTC"}}</tool>'
    )

    calls = extract_tool_calls(text)

    assert [c.tool for c in calls] == ["calculate", "current_time"]
    assert calls[1].arguments == {"timezone": "UTC"}
    assert extract_tool_calls("no tools here") == []


@pytest.mark.asyncio
async def test_tool_skill_runs_requested_tools_and_answers(env: Settings) -> None:
    upstream = Upstream(
        streaming('<tool>{"tool": "calculate", "arguments": {"expression": "6 * 7"}}</tool>'),
        streaming("The answer is 42."),
    )

    chunks = await collect(default_skills(upstream.transport).get("tool"), chat_request("what is 6 times 7?", enableTools=True), env)

    text = "".join(c.content for c in chunks if c.type == "content")
    assert text == "The answer is 42."
    assert chunks[-1].type == "complete"
    assert len(upstream.requests) == 2

    first = upstream.body(0)["messages"]
    assert first[0]["role"] == "system"
    assert "calculate" in first[0]["content"]

    follow_up = upstream.body(1)["messages"]
    assert follow_up[-2]["role"] == "assistant"
    assert "<tool>" in follow_up[-2]["content"]
    assert follow_up[-1]["role"] == "user"
    assert "Tool results" in follow_up[-1]["content"]
    assert '"value": 42' in follow_up[-1]["content"]


@pytest.mark.asyncio
async def test_tool_skill_stops_after_round_limit(env: Settings) -> None:
    env.max_tool_rounds = 1
    looping = streaming('<tool>{"tool": "json_parse", "arguments": {"text": "1"}}</tool>')
    upstream = Upstream(looping)

    chunks = await collect(default_skills(upstream.transport).get("tool"), chat_request(enableTools=True), env)

    assert len(upstream.requests) == 2
    assert chunks[-1].type == "complete"


@pytest.mark.asyncio
async def test_tool_markup_is_not_streamed_to_the_client(env: Settings) -> None:
    upstream = Upstream(
        streaming("Let me work that out. <to", 'ol>{"tool": "calculate", ', '"arguments": {"expression": "6 * 7"}}</to', "ol> One moment."),
        streaming("The answer ", "is 42."),
    )

    chunks = await collect(default_skills(upstream.transport).get("tool"), chat_request("6 times 7?", enableTools=True), env)

    text = "".join(c.content for c in chunks if c.type == "content")
    assert text == "Let me work that out.  One moment.\n\nThe answer is 42."
    assert "<tool>" not in text
    assert len(upstream.requests) == 2


@pytest.mark.parametrize(
    "parts, expected",
    [
        (["a <tool>{}</tool> b"], "a  b"),
        (["a <", "tool>x</tool>b"], "a b"),
        (["x < y", " and y > z"], "x < y and y > z"),
        (["trailing <to"], "trailing <to"),
        (["open <tool>never closed"], "open "),
    ],
)
def test_tool_tag_filter(parts: List[str], expected: str) -> None:
    f = _ToolTagFilter()
    out = "".join(f.feed(p) for p in parts) + f.flush()
    assert out == expected
