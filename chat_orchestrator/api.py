from __future__ import annotations
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from .errors import NotFoundError, ValidationError
from .metrics import metrics
from .models import ChatRequest
from .sse import DONE_EVENT, encode_event
from .task_manager import TaskManager

router = APIRouter()

def get_task_manager(request: Request) -> TaskManager:
    return request.app.state.task_manager

def _not_found(task_id: str) -> NotFoundError:
    return NotFoundError(f"Task not found: {task_id}", details={"task_id": task_id})

async def _sse(manager: TaskManager, task_id: str, req: ChatRequest) -> AsyncIterator[str]:
    async with aclosing(manager.execute_task(task_id, req)) as events:
        async for event in events:
            yield encode_event(event.model_dump(mode="json"))
    yield DONE_EVENT

@router.post("/chat")
async def chat(req: ChatRequest, manager: TaskManager = Depends(get_task_manager)):
    if len(req.messages) > manager.env.max_messages:
        raise ValidationError(
            f"too many messages: {len(req.messages)} > {manager.env.max_messages}",
            details={"max_messages": manager.env.max_messages},
        )
    task = manager.create_task(req)
    await metrics.inc("tasks_created", 1)

    if req.stream:
        return StreamingResponse(
            _sse(manager, task.id, req),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Task-Id": task.id},
        )

    events = [e.model_dump(mode="json") async for e in manager.execute_task(task.id, req)]
    return {"task": task.snapshot(), "events": events}

@router.get("/tasks")
async def list_tasks(manager: TaskManager = Depends(get_task_manager)):
    return {"tasks": [t.snapshot() for t in manager.list_tasks()]}

@router.get("/tasks/{task_id}")
async def get_task(task_id: str, manager: TaskManager = Depends(get_task_manager)):
    t = manager.get_task(task_id)
    if not t:
        raise _not_found(task_id)
    return t.snapshot()

@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, manager: TaskManager = Depends(get_task_manager)):
    deleted = manager.delete_task(task_id)
    body: Dict[str, Any] = {"task_id": task_id, "deleted": deleted}
    if not deleted:
        body["reason"] = "not found"
    return body

@router.get("/tools")
async def list_tools(manager: TaskManager = Depends(get_task_manager)):
    return {"tools": manager.tool_executor.list_tools()}

@router.get("/stats")
async def stats(manager: TaskManager = Depends(get_task_manager)):
    return {
        "tasks": manager.stats(),
        "tool_cache": manager.tool_executor.cache.stats(),
        "skills": [s.describe() for s in manager.skills.list()],
    }

@router.get("/health")
async def health(manager: TaskManager = Depends(get_task_manager)):
    return {"ok": True, "features": manager.env.features()}

@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics():
    return await metrics.render_prometheus()
