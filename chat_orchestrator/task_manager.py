from __future__ import annotations
import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import Settings, settings as default_settings
from .errors import OperationTimeoutError, SkillError
from .mcp_client import ToolExecutor
from .metrics import metrics
from .models import ChatRequest, Step, StepType, Task, TaskEvent, TaskType
from .skills import SkillContext, SkillInput, SkillRegistry, default_skills, select_skill_kind

logger = logging.getLogger(__name__)


def task_type_for(request: ChatRequest) -> TaskType:
    if request.images:
        return "image"
    if request.files:
        return "file"
    if request.enable_tools:
        return "code"
    return "chat"


def _step_event(step: Step, event: str) -> TaskEvent:
    return TaskEvent(type="step", data={"event": event, "step": step.model_dump(mode="json")})


class TaskManager:
    """
    Owns the task registry and drives plan -> skill -> respond for each task.

    The registry keeps insertion order for listing and a separate access order used to
    evict the oldest finished tasks once max_tasks is reached. Pending and running tasks
    are never evicted.
    """
    def __init__(
            self,
            environment: Optional[Settings] = None,
            *,
            skills: Optional[SkillRegistry] = None,
            tool_executor: Optional[ToolExecutor] = None,
    ) -> None:
        self.env = environment or default_settings
        self.skills = skills or default_skills()
        self.tool_executor = tool_executor or ToolExecutor(config=self.env)
        self.max_tasks = self.env.max_tasks
        self.step_timeout_s = self.env.step_timeout_seconds
        self._tasks: Dict[str, Task] = {}
        self._access: "OrderedDict[str, None]" = OrderedDict()

    # registry

    def create_task(self, request: ChatRequest) -> Task:
        self._evict_finished()
        task = Task(type=task_type_for(request), user_message=request.last_message)
        self._tasks[task.id] = task
        self._access[task.id] = None
        logger.info("task created task=%s type=%s", task.id, task.type)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is not None:
            self._access.move_to_end(task_id)
        return task

    def list_tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def delete_task(self, task_id: str) -> bool:
        self._access.pop(task_id, None)
        return self._tasks.pop(task_id, None) is not None

    def stats(self) -> Dict[str, int]:
        counts = {"total": len(self._tasks), "pending": 0, "running": 0, "completed": 0, "failed": 0}
        for t in self._tasks.values():
            counts[t.status] += 1
        return counts

    def _evict_finished(self) -> None:
        if len(self._tasks) < self.max_tasks:
            return
        removed = 0
        for task_id in list(self._access):
            if len(self._tasks) < self.max_tasks:
                break
            if self._tasks[task_id].is_terminal:
                self.delete_task(task_id)
                removed += 1
        if removed:
            logger.info("evicted finished tasks removed=%d remaining=%d", removed, len(self._tasks))

    # execution

    async def execute_task(self, task_id: str, request: ChatRequest) -> AsyncIterator[TaskEvent]:
        task = self._tasks.get(task_id)
        if task is None:
            yield TaskEvent(type="error", data={"error": f"Task not found: {task_id}", "code": "NOT_FOUND"})
            return
        if task.status != "pending":
            reason = "Task is already running" if task.status == "running" else "Task has already been executed"
            yield TaskEvent(type="error", data={"error": reason, "code": "INVALID_STATE"})
            return

        self._access.move_to_end(task_id)
        task.mark_running()
        await metrics.inc("tasks_running", 1)
        t0 = time.perf_counter()
        try:
            yield TaskEvent(type="task", data={"event": "started", "task": task.snapshot()})
            async with aclosing(self._run_steps(task, request)) as events:
                async for event in events:
                    yield event
            logger.info("task completed task=%s duration_ms=%d", task_id, int((time.perf_counter() - t0) * 1000))
        except (GeneratorExit, asyncio.CancelledError):
            # consumer went away mid-stream
            if not task.is_terminal:
                for s in task.steps:
                    if s.status == "running":
                        s.fail("cancelled")
                task.mark_failed("Task execution cancelled")
                await metrics.inc("tasks_failed", 1)
            raise
        except Exception as e:
            logger.error("task failed task=%s error=%s", task_id, e)
            if not task.is_terminal:
                task.mark_failed(str(e))
                await metrics.inc("tasks_failed", 1)
            yield TaskEvent(type="error", data={"error": str(e), "task": task.snapshot()})
        finally:
            await metrics.dec("tasks_running", 1)
            await metrics.observe("task_duration_seconds", time.perf_counter() - t0)

    def _start_step(self, task: Task, type: StepType, name: str, description: str) -> Step:
        return task.add_step(Step(task_id=task.id, type=type, name=name, description=description))

    async def _run_steps(self, task: Task, request: ChatRequest) -> AsyncIterator[TaskEvent]:
        # PLAN step
        step = self._start_step(task, "plan", "Analyse request", "Understand the request and choose a skill")
        yield _step_event(step, "start")
        step.complete({
            "needs_multimodal": bool(request.images),
            "has_files": bool(request.files),
            "needs_tools": request.enable_tools,
            "skill": select_skill_kind(request),
        })
        task.touch()
        yield _step_event(step, "complete")

        # SKILL step
        skill = self.skills.select(request)
        step = self._start_step(task, "skill", skill.name, skill.description)
        yield _step_event(step, "start")

        context = SkillContext(
            task_id=task.id,
            step_id=step.id,
            environment=self.env,
            tool_executor=self.tool_executor,
        )
        parts: List[str] = []
        try:
            async with aclosing(skill.execute(SkillInput.from_request(request), context)) as chunks:
                while True:
                    try:
                        chunk = await asyncio.wait_for(anext(chunks), timeout=self.step_timeout_s)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError as e:
                        raise OperationTimeoutError(f"skill {skill.name}", self.step_timeout_s) from e

                    if chunk.type == "content":
                        if chunk.content:
                            parts.append(chunk.content)
                            await metrics.inc("skill_chunks", 1)
                            yield TaskEvent(type="content", data={"content": chunk.content})
                    elif chunk.type == "error":
                        raise SkillError(chunk.error or "skill failed", details={"skill": skill.name})
                    else:
                        break
        except Exception as e:
            step.fail(str(e))
            task.touch()
            yield _step_event(step, "error")
            raise

        result = "".join(parts)
        step.complete({"content": result, "skill": skill.name})
        task.touch()
        yield _step_event(step, "complete")

        # RESPOND step
        step = self._start_step(task, "respond", "Respond", "Assemble and return the final result")
        yield _step_event(step, "start")
        step.complete({"result": result})
        yield _step_event(step, "complete")

        task.mark_completed(result)
        await metrics.inc("tasks_completed", 1)
        yield TaskEvent(type="complete", data={"task": task.snapshot()})

    async def run_to_completion(self, task_id: str, request: ChatRequest) -> List[TaskEvent]:
        return [event async for event in self.execute_task(task_id, request)]
