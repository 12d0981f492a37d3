"""Tool registry and executor exposed to skills (schema validation, timeouts, result cache)."""
from __future__ import annotations
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .cache import TTLCache
from .config import Settings, settings as default_settings
from .errors import InvalidArguments, OperationTimeoutError, ToolNotFound, WorkerError
from .metrics import metrics
from .models import ToolInvocation, ToolResult
from . import tools

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    cache_ttl: Optional[float] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_model.model_json_schema(),
        }


def build_registry() -> Dict[str, ToolDefinition]:
    return {
        "calculate": ToolDefinition(
            name="calculate",
            description="Evaluate an arithmetic expression, e.g. '2 + 2' or 'sqrt(2) * pi'.",
            input_model=tools.CalculateInput,
            handler=tools.calculate,
        ),
        "current_time": ToolDefinition(
            name="current_time",
            description="Current date/time in a timezone, as ISO 8601, date, time, unix seconds or a strftime pattern.",
            input_model=tools.CurrentTimeInput,
            handler=tools.current_time,
            cache_ttl=1.0,
        ),
        "json_parse": ToolDefinition(
            name="json_parse",
            description="Parse a JSON document and return the decoded value.",
            input_model=tools.JsonParseInput,
            handler=tools.json_parse,
        ),
        "json_stringify": ToolDefinition(
            name="json_stringify",
            description="Serialize a value to JSON text.",
            input_model=tools.JsonStringifyInput,
            handler=tools.json_stringify,
        ),
        "execute_code": ToolDefinition(
            name="execute_code",
            description=(
                "Run a short Python snippet in a restricted sandbox (no imports, files, network "
                "or process access). Returns printed output and the value of the last expression."
            ),
            input_model=tools.ExecuteCodeInput,
            handler=tools.execute_code,
        ),
    }


def cache_key(name: str, args: Dict[str, Any]) -> str:
    return f"tool:{name}:" + json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)


class ToolExecutor:
    """Execute registered tools with argument validation, a timeout and result caching."""

    def __init__(
            self,
            *,
            registry: Optional[Dict[str, ToolDefinition]] = None,
            cache: Optional[TTLCache] = None,
            config: Optional[Settings] = None,
    ) -> None:
        config = config or default_settings
        self._registry = dict(registry if registry is not None else build_registry())
        self.timeout_s = config.tool_timeout_seconds
        self.default_ttl = config.tool_cache_ttl_seconds
        self.cache = cache if cache is not None else TTLCache(
            default_ttl=config.tool_cache_ttl_seconds,
            max_entries=config.tool_cache_max_entries,
        )

    def __contains__(self, name: str) -> bool:
        return name in self._registry

    def list_tools(self) -> List[Dict[str, Any]]:
        return [d.describe() for d in self._registry.values()]

    def tools_prompt(self) -> str:
        if not self._registry:
            return ""
        lines = ["You have access to the following tools:"]
        for d in self._registry.values():
            params = json.dumps(d.input_model.model_json_schema().get("properties", {}), ensure_ascii=False)
            lines.append(f"- {d.name}: {d.description}\n  Parameters: {params}")
        lines.append(
            'To use a tool, respond with: <tool>{"tool": "tool_name", "arguments": {}}</tool>'
        )
        return "\n".join(lines)

    def _validate(self, name: str, args: Dict[str, Any]) -> tuple[ToolDefinition, BaseModel]:
        definition = self._registry.get(name)
        if definition is None:
            raise ToolNotFound(name)
        try:
            payload = definition.input_model.model_validate(args)
        except PydanticValidationError as e:
            raise InvalidArguments(
                f"invalid arguments for {name}",
                details={"tool": name, "errors": e.errors(include_url=False, include_context=False)},
            ) from e
        return definition, payload

    async def _run(self, definition: ToolDefinition, payload: BaseModel) -> Dict[str, Any]:
        await metrics.inc("tool_calls", tool=definition.name)
        t0 = time.perf_counter()
        try:
            return await asyncio.wait_for(definition.handler(payload), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"tool {definition.name}", self.timeout_s) from e
        finally:
            await metrics.observe("tool_latency_seconds", time.perf_counter() - t0)

    async def _execute(self, name: str, args: Dict[str, Any]) -> tuple[Dict[str, Any], bool]:
        definition, payload = self._validate(name, args)
        key = cache_key(name, payload.model_dump(mode="json"))
        ran = False

        async def produce() -> Dict[str, Any]:
            nonlocal ran
            ran = True
            return await self._run(definition, payload)

        ttl = definition.cache_ttl if definition.cache_ttl is not None else self.default_ttl
        out = await self.cache.get_or_set(key, produce, ttl)
        if not ran:
            await metrics.inc("tool_cache_hits", tool=name)
            logger.debug("tool cache hit tool=%s", name)
        return out, not ran

    async def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        out, _ = await self._execute(name, args)
        return out

    async def call_tool(self, name: str, args: Dict[str, Any]) -> ToolResult:
        """Like execute, but failures come back as a ToolResult instead of raising."""
        t0 = time.perf_counter()
        # model-supplied names stay out of metric labels
        label = name if name in self._registry else "unknown"
        try:
            out, cached = await self._execute(name, args)
        except WorkerError as e:
            await metrics.inc("tool_failures", tool=label)
            logger.warning("tool failed tool=%s code=%s error=%s", name, e.code, e.message)
            return ToolResult(
                tool=name, ok=False, error=e.message, error_code=e.code,
                latency_ms=int((time.perf_counter() - t0) * 1000),
            )
        except Exception as e:
            await metrics.inc("tool_failures", tool=label)
            logger.exception("tool crashed tool=%s", name)
            return ToolResult(
                tool=name, ok=False, error=str(e), error_code="INTERNAL_ERROR",
                latency_ms=int((time.perf_counter() - t0) * 1000),
            )
        return ToolResult(
            tool=name, ok=True, output=out, cached=cached,
            latency_ms=int((time.perf_counter() - t0) * 1000),
        )

    async def execute_many(self, invocations: Iterable[ToolInvocation]) -> List[ToolResult]:
        calls = [self.call_tool(inv.tool, inv.arguments) for inv in invocations]
        return list(await asyncio.gather(*calls))
