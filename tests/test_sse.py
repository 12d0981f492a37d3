from __future__ import annotations

import json
from typing import AsyncIterator, Iterable, Union

import pytest

from chat_orchestrator.errors import UpstreamError
from chat_orchestrator.sse import DONE_EVENT, encode_event, iter_content, iter_sse_data, parse_delta


async def _feed(parts: Iterable[Union[bytes, str]]) -> AsyncIterator[Union[bytes, str]]:
    for part in parts:
        yield part


def _delta(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n\n"


@pytest.mark.asyncio
async def test_lines_split_across_reads_are_reassembled() -> None:
    body = (_delta("Hel") + _delta("lo") + "data: [DONE]\n\n").encode()
    parts = [body[:7], body[7:31], body[31:]]

    got = [c async for c in iter_content(_feed(parts))]

    assert got == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_multibyte_characters_split_across_reads() -> None:
    body = _delta("héllo").encode()
    cut = body.index("é".encode()) + 1

    got = [c async for c in iter_content(_feed([body[:cut], body[cut:]]))]

    assert got == ["héllo"]


@pytest.mark.asyncio
async def test_stops_at_done_and_ignores_noise() -> None:
    body = ": keepalive\n\nevent: ping\n" + "data: {broken\n\n" + _delta("a") + "data: [DONE]\n\n" + _delta("ignored")

    got = [d async for d in iter_sse_data(_feed([body]))]

    assert len(got) == 2
    assert [c async for c in iter_content(_feed([body]))] == ["a"]


@pytest.mark.asyncio
async def test_trailing_line_without_newline_is_flushed() -> None:
    got = [c async for c in iter_content(_feed([_delta("x").rstrip("\n")]))]
    assert got == ["x"]


def test_parse_delta_variants() -> None:
    assert parse_delta('{"choices": [{"delta": {"content": "hi"}}]}') == "hi"
    assert parse_delta('{"choices": [{"message": {"content": "full"}}]}') == "full"
    assert parse_delta('{"choices": [{"delta": {"role": "assistant"}}]}') is None
    assert parse_delta('{"choices": []}') is None
    assert parse_delta("[1, 2]") is None
    assert parse_delta("not json") is None
    assert parse_delta('{"choices": 5}') is None
    assert parse_delta('{"choices": [{"delta": "x"}]}') is None


def test_parse_delta_raises_on_error_payload() -> None:
    with pytest.raises(UpstreamError) as exc:
        parse_delta('{"error": {"message": "quota exceeded"}}', provider="text")
    assert "quota exceeded" in exc.value.message
    assert exc.value.provider == "text"


def test_encode_event_is_a_single_data_line() -> None:
    encoded = encode_event({"type": "content", "data": {"content": "line1\nline2"}})

    assert encoded.startswith("data: ")
    assert encoded.endswith("\n\n")
    assert encoded.count("\n") == 2
    assert json.loads(encoded[len("data: "):]) == {"type": "content", "data": {"content": "line1\nline2"}}
    assert DONE_EVENT == "data: [DONE]\n\n"


@pytest.mark.asyncio
@pytest.mark.parametrize("odd", ['"oops"', "[]", "3", "null"])
async def test_wrongly_shaped_delta_is_skipped(odd: str) -> None:
    body = (
        _delta("A")
        + 'data: {"choices": [{"delta": %s}]}\n\n' % odd
        + 'data: {"choices": [{"message": %s}]}\n\n' % odd
        + _delta("B")
        + "data: [DONE]\n\n"
    )

    got = [c async for c in iter_content(_feed([body]))]

    assert got == ["A", "B"]
