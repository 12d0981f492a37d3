from __future__ import annotations
import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, Field

from .errors import ToolError
from .models import StrictModel
from . import sandbox


class CalculateInput(StrictModel):
    expression: str = Field(min_length=1, max_length=1000, validation_alias=AliasChoices("expression", "expr"))


class CurrentTimeInput(StrictModel):
    timezone: str = "UTC"
    format: Literal["iso", "date", "time", "unix", "custom"] = "iso"
    pattern: Optional[str] = Field(default=None, max_length=100)


class JsonParseInput(StrictModel):
    text: str = Field(max_length=200_000)


class JsonStringifyInput(StrictModel):
    value: Any
    indent: Optional[int] = Field(default=None, ge=0, le=8)
    sort_keys: bool = False


class ExecuteCodeInput(StrictModel):
    code: str = Field(min_length=1, max_length=20_000)
    language: Literal["python"] = "python"


async def calculate(args: CalculateInput) -> Dict[str, Any]:
    value = await asyncio.to_thread(sandbox.evaluate_expression, args.expression)
    return {"expression": args.expression, "value": value}


async def current_time(args: CurrentTimeInput) -> Dict[str, Any]:
    try:
        tz = timezone.utc if args.timezone.upper() == "UTC" else ZoneInfo(args.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolError(f"unknown timezone: {args.timezone}") from e

    now = datetime.now(tz)
    if args.format == "unix":
        formatted = str(int(now.timestamp()))
    elif args.format == "date":
        formatted = now.date().isoformat()
    elif args.format == "time":
        formatted = now.time().replace(microsecond=0).isoformat()
    elif args.format == "custom":
        if not args.pattern:
            raise ToolError("format=custom requires a pattern")
        formatted = now.strftime(args.pattern)
    else:
        formatted = now.isoformat()
    return {"timezone": args.timezone, "format": args.format, "value": formatted}


async def json_parse(args: JsonParseInput) -> Dict[str, Any]:
    try:
        return {"value": json.loads(args.text)}
    except json.JSONDecodeError as e:
        raise ToolError(f"invalid JSON at line {e.lineno} column {e.colno}: {e.msg}") from e


async def json_stringify(args: JsonStringifyInput) -> Dict[str, Any]:
    try:
        text = json.dumps(args.value, indent=args.indent, sort_keys=args.sort_keys, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ToolError(f"value is not JSON serializable: {e}") from e
    return {"text": text}


async def execute_code(args: ExecuteCodeInput) -> Dict[str, Any]:
    # CPU-bound and trace-limited; keep it off the event loop
    return await asyncio.to_thread(sandbox.run_code, args.code)
