from __future__ import annotations
import asyncio
from typing import Dict, Optional, Tuple

PREFIX = "chat_orchestrator"

COUNTERS = (
    "tasks_created",
    "tasks_completed",
    "tasks_failed",
    "tool_calls",
    "tool_failures",
    "tool_cache_hits",
    "skill_chunks",
)
GAUGES = ("tasks_running",)
SUMMARIES = ("task_duration_seconds", "tool_latency_seconds")


def escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Metrics:
    """
    Process-local counters, gauges and duration summaries rendered in Prometheus text
    format. Counters may carry a single `tool` label.
    """
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.counters: Dict[Tuple[str, Optional[str]], int] = {(name, None): 0 for name in COUNTERS}
        self.gauges: Dict[str, int] = {name: 0 for name in GAUGES}
        self.summaries: Dict[str, Tuple[int, float]] = {name: (0, 0.0) for name in SUMMARIES}

    async def inc(self, name: str, by: int = 1, *, tool: Optional[str] = None) -> None:
        async with self._lock:
            if name in self.gauges:
                self.gauges[name] += by
                return
            self.counters[(name, tool)] = self.counters.get((name, tool), 0) + by
            if tool is not None:
                # the unlabelled series is the total
                self.counters[(name, None)] = self.counters.get((name, None), 0) + by

    async def dec(self, name: str, by: int = 1) -> None:
        async with self._lock:
            self.gauges[name] = self.gauges.get(name, 0) - by

    async def observe(self, name: str, seconds: float) -> None:
        async with self._lock:
            count, total = self.summaries.get(name, (0, 0.0))
            self.summaries[name] = (count + 1, total + seconds)

    async def snapshot(self) -> Dict[str, float]:
        async with self._lock:
            out: Dict[str, float] = {name: v for (name, tool), v in self.counters.items() if tool is None}
            out.update(self.gauges)
            for name, (count, total) in self.summaries.items():
                out[f"{name}_count"] = count
                out[f"{name}_sum"] = round(total, 6)
            return out

    async def render_prometheus(self) -> str:
        async with self._lock:
            lines = []
            for name in sorted({n for n, _ in self.counters}):
                metric = f"{PREFIX}_{name}_total"
                lines.append(f"# TYPE {metric} counter")
                for (n, tool), v in self.counters.items():
                    if n != name:
                        continue
                    labels = f'{{tool="{escape_label(tool)}"}}' if tool is not None else ""
                    lines.append(f"{metric}{labels} {v}")
            for name, v in self.gauges.items():
                lines.append(f"# TYPE {PREFIX}_{name} gauge")
                lines.append(f"{PREFIX}_{name} {v}")
            for name, (count, total) in self.summaries.items():
                lines.append(f"# TYPE {PREFIX}_{name} summary")
                lines.append(f"{PREFIX}_{name}_count {count}")
                lines.append(f"{PREFIX}_{name}_sum {total:.6f}")
            return "\n".join(lines) + "\n"


metrics = Metrics()
