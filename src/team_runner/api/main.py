"""FastAPI app entrypoint for team-runner."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from team_runner.config.settings import Settings, get_settings
from team_runner.errors import StateConflictError, WorkItemNotFoundError
from team_runner.runner.audit import BackgroundAuditWriter, StoreAuditSink
from team_runner.runner.controller import RerunCancelController
from team_runner.runtime import build_store
from team_runner.storage.base import StatusStore
from team_runner.storage.models import (
    AgentRecord,
    AuditLogEntry,
    PipelineStep,
    StepExecutionRecord,
    TaskPriority,
    TaskRecord,
    TeamRecord,
    TeamRunRecord,
    WorkStatus,
)


class CreateAgentRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    system_prompt: str = ""
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)


class CreateTaskRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    assigned_agent_id: str | None = None
    priority: TaskPriority = "medium"
    created_by: str = Field(min_length=1)
    dispatch: bool = False


class CreateTeamRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    steps: list[PipelineStep] = Field(default_factory=list)
    created_by: str = Field(min_length=1)


class UpdateTeamStepsRequest(BaseModel):
    steps: list[PipelineStep]


class CreateTeamRunRequest(BaseModel):
    input_task: str = Field(min_length=1)
    created_by: str = Field(min_length=1)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: StatusStore | None,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or build_store(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "audit"):
        app.state.audit = BackgroundAuditWriter(
            StoreAuditSink(app.state.storage), queue_size=settings.audit_queue_size
        )

    if not hasattr(app.state, "controller"):
        app.state.controller = RerunCancelController(app.state.storage, app.state.audit)


def create_app(
    *,
    storage: StatusStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, storage_override=storage)
        yield
        app.state.audit.close()

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(app, settings=settings, storage_override=storage)

    @app.exception_handler(StateConflictError)
    async def _state_conflict(_request: Request, exc: StateConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(WorkItemNotFoundError)
    async def _not_found(_request: Request, exc: WorkItemNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    def _get_storage(request: Request) -> StatusStore:
        if not hasattr(request.app.state, "storage"):
            _ensure_runtime_state(request.app, settings=settings, storage_override=storage)
        return request.app.state.storage

    def _get_controller(request: Request) -> RerunCancelController:
        _get_storage(request)
        return request.app.state.controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/agents", response_model=AgentRecord)
    def create_agent(payload: CreateAgentRequest, request: Request) -> AgentRecord:
        return _get_storage(request).create_agent(**payload.model_dump())

    @app.post("/tasks", response_model=TaskRecord)
    def create_task(payload: CreateTaskRequest, request: Request) -> TaskRecord:
        store = _get_storage(request)
        return store.create_task(
            workspace_id=payload.workspace_id,
            title=payload.title,
            description=payload.description,
            assigned_agent_id=payload.assigned_agent_id,
            created_by=payload.created_by,
            priority=payload.priority,
            status=WorkStatus.DISPATCHED if payload.dispatch else WorkStatus.PENDING,
        )

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(task_id: str, request: Request) -> TaskRecord:
        record = _get_storage(request).get_task(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return record

    @app.post("/tasks/{task_id}/dispatch", response_model=TaskRecord)
    def dispatch_task(task_id: str, request: Request, actor_id: str | None = None) -> TaskRecord:
        return _get_controller(request).dispatch_task(task_id, actor_id=actor_id)

    @app.post("/tasks/{task_id}/rerun", response_model=TaskRecord)
    def rerun_task(task_id: str, request: Request, actor_id: str | None = None) -> TaskRecord:
        return _get_controller(request).rerun_task(task_id, actor_id=actor_id)

    @app.post("/tasks/{task_id}/cancel", response_model=TaskRecord)
    def cancel_task(task_id: str, request: Request, actor_id: str | None = None) -> TaskRecord:
        return _get_controller(request).cancel_task(task_id, actor_id=actor_id)

    @app.post("/teams", response_model=TeamRecord)
    def create_team(payload: CreateTeamRequest, request: Request) -> TeamRecord:
        return _get_storage(request).create_team(
            workspace_id=payload.workspace_id,
            name=payload.name,
            steps=payload.steps,
            created_by=payload.created_by,
        )

    @app.get("/teams/{team_id}", response_model=TeamRecord)
    def get_team(team_id: str, request: Request) -> TeamRecord:
        record = _get_storage(request).get_team(team_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Team not found")
        return record

    @app.put("/teams/{team_id}/steps", response_model=TeamRecord)
    def update_team_steps(
        team_id: str, payload: UpdateTeamStepsRequest, request: Request
    ) -> TeamRecord:
        return _get_storage(request).update_team_steps(team_id, payload.steps)

    @app.post("/teams/{team_id}/runs", response_model=TeamRunRecord)
    def create_team_run(
        team_id: str, payload: CreateTeamRunRequest, request: Request
    ) -> TeamRunRecord:
        store = _get_storage(request)
        team = store.get_team(team_id)
        if team is None:
            raise HTTPException(status_code=404, detail="Team not found")
        return store.create_team_run(
            team=team, input_task=payload.input_task, created_by=payload.created_by
        )

    @app.get("/runs/{run_id}", response_model=TeamRunRecord)
    def get_team_run(run_id: str, request: Request) -> TeamRunRecord:
        record = _get_storage(request).get_team_run(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Team run not found")
        return record

    @app.get("/runs/{run_id}/steps", response_model=list[StepExecutionRecord])
    def list_run_steps(
        run_id: str, request: Request, generation: int | None = None
    ) -> list[StepExecutionRecord]:
        store = _get_storage(request)
        run = store.get_team_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Team run not found")
        return store.list_step_executions(run_id, generation=generation or run.generation)

    @app.post("/runs/{run_id}/rerun", response_model=TeamRunRecord)
    def rerun_team_run(run_id: str, request: Request, actor_id: str | None = None) -> TeamRunRecord:
        return _get_controller(request).rerun_team_run(run_id, actor_id=actor_id)

    @app.post("/runs/{run_id}/cancel", response_model=TeamRunRecord)
    def cancel_team_run(
        run_id: str, request: Request, actor_id: str | None = None
    ) -> TeamRunRecord:
        return _get_controller(request).cancel_team_run(run_id, actor_id=actor_id)

    @app.get("/audit", response_model=list[AuditLogEntry])
    def list_audit(workspace_id: str, request: Request, limit: int = 100) -> list[AuditLogEntry]:
        return _get_storage(request).list_audit(workspace_id, limit=limit)

    return app


app = create_app()
