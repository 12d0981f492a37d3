from __future__ import annotations
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .api import router
from .config import Settings, settings
from .errors import WorkerError
from .task_manager import TaskManager

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(
        environment: Optional[Settings] = None,
        *,
        task_manager: Optional[TaskManager] = None,
) -> FastAPI:
    env = environment or settings
    configure_logging(env.log_level)

    app = FastAPI(title="Chat Task Orchestrator", version="0.1.0")
    app.state.task_manager = task_manager or TaskManager(env)

    @app.exception_handler(WorkerError)
    async def worker_error_handler(request: Request, exc: WorkerError):
        if exc.status_code >= 500:
            logger.error("request failed path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": {
                "code": "VALIDATION_ERROR",
                "message": "invalid request body",
                "details": {"errors": jsonable_encoder(exc.errors())},
            }},
        )

    @app.get("/")
    async def root():
        return {"service": "chat-task-orchestrator", "status": "running"}

    app.include_router(router)
    return app


app = create_app()
