import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from pagetrail.errors import ExecutionInitError, InvalidRequestError
from pagetrail.models import ExecutionRequest
from pagetrail.orchestrator import PaginatedExecutor
from pagetrail.schemas import ExecutePaginatedRequest
from pagetrail.tasks import TaskState

log = logging.getLogger(__name__)


def _format_errors(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )


def parse_execution_request(payload: Any) -> ExecutionRequest:
    """Build an ExecutionRequest from the camelCase request body."""
    try:
        return ExecutePaginatedRequest.model_validate(payload).to_request()
    except ValidationError as exc:
        raise InvalidRequestError(_format_errors(exc)) from exc


def execute_paginated(executor: PaginatedExecutor, payload: Any) -> tuple[int, dict[str, Any]]:
    """Start a crawl for payload. Returns (http_status, response_body)."""
    try:
        request = parse_execution_request(payload)
    except InvalidRequestError as exc:
        return 400, {"error": "Invalid paginated request", "details": str(exc)}

    try:
        ack = executor.run(request)
    except ExecutionInitError as exc:
        return 500, {
            "error":     "Failed to execute paginated request",
            "details":   str(exc),
            "code":      exc.code,
            "lastError": None,
        }
    return 200, {"status": 200, "data": ack}


def build_router(executor: PaginatedExecutor) -> APIRouter:
    router = APIRouter(tags=["executions"])

    @router.post("/execute/paginated")
    def post_execute_paginated(payload: Any = Body(...)):
        """Start a background crawl and return its execution id immediately."""
        status_code, body = execute_paginated(executor, payload)
        return JSONResponse(status_code=status_code, content=body)

    @router.get("/executions/{execution_id}")
    def get_execution(execution_id: str):
        """Parent record and page records, as currently stored."""
        parent = executor.log_store.get_parent_record(execution_id)
        if parent is None:
            raise HTTPException(status_code=404, detail="execution not found")
        children = executor.log_store.list_child_records(execution_id)
        return {
            "execution": parent.to_dict(redact=True),
            "finished":  parent.is_terminal,
            "pages":     [c.to_dict() for c in children],
        }

    @router.get("/tasks")
    def list_tasks(state: Optional[str] = None):
        tasks = executor.registry.list()
        if state is not None:
            tasks = [t for t in tasks if t.state == state]
        return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}

    @router.get("/tasks/{execution_id}")
    def get_task(execution_id: str):
        task = executor.registry.get(execution_id)
        if task is None:
            raise HTTPException(status_code=404, detail="task not found")
        return task.to_dict()

    @router.delete("/tasks/{execution_id}")
    def cancel_task(execution_id: str):
        task = executor.registry.get(execution_id)
        if task is None:
            raise HTTPException(status_code=404, detail="task not found")
        if task.state == TaskState.FINISHED or not executor.registry.cancel(execution_id):
            raise HTTPException(status_code=409, detail="task already finished")
        return task.to_dict()

    return router


def create_app(executor: PaginatedExecutor) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        executor.registry.shutdown(wait=False, cancel_running=True)

    app = FastAPI(title="pagetrail", lifespan=lifespan)
    app.include_router(build_router(executor))
    return app
