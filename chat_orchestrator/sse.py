"""Server-sent event helpers: decoding an upstream completion body and encoding outbound events."""
from __future__ import annotations
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional, Union

from .errors import UpstreamError

logger = logging.getLogger(__name__)

DONE = "[DONE]"
DONE_EVENT = f"data: {DONE}\n\n"


def _data_of(line: str) -> Optional[str]:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


async def iter_sse_data(chunks: AsyncIterable[Union[bytes, str]]) -> AsyncIterator[str]:
    """Yield the payload of every `data:` line; partial lines are buffered across reads."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for raw in chunks:
        buffer += decoder.decode(raw) if isinstance(raw, (bytes, bytearray)) else raw
        *lines, buffer = buffer.split("\n")
        for line in lines:
            data = _data_of(line)
            if not data:
                continue
            if data == DONE:
                return
            yield data

    buffer += decoder.decode(b"", final=True)
    data = _data_of(buffer)
    if data and data != DONE:
        yield data


def parse_delta(data: str, *, provider: str = "upstream") -> Optional[str]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("skipping malformed SSE payload: %.80s", data)
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("error"):
        err = payload["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise UpstreamError(f"{provider} stream error: {message}", provider=provider)

    choices = payload.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    content = None
    for key in ("delta", "message"):
        part = choice.get(key)
        if isinstance(part, dict) and part.get("content") is not None:
            content = part["content"]
            break
    return None if content is None else str(content)


async def iter_content(chunks: AsyncIterable[Union[bytes, str]], *, provider: str = "upstream") -> AsyncIterator[str]:
    async for data in iter_sse_data(chunks):
        content = parse_delta(data, provider=provider)
        if content:
            yield content


def encode_event(event: Dict[str, Any]) -> str:
    # json.dumps escapes newlines, so one event is always one data line
    return f"data: {json.dumps(event, ensure_ascii=False, default=str)}\n\n"
