from __future__ import annotations

import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from brokerflow_api.completion_client import trigger_ai_completion
from brokerflow_api.engine import TaskGraphEngine
from brokerflow_api.errors import CycleDetected, StoreUnavailable, UnknownDependency
from brokerflow_api.logging_config import get_logger, setup_logging
from brokerflow_api.schemas import (
    ArtifactBatchCreate,
    ArtifactRead,
    EventRead,
    InterfaceTypeRead,
    PropagationResult,
    ResolvedStatusRead,
    SubmissionRead,
    SynthesisResult,
    TaskCreate,
    TaskDependenciesUpdate,
    TaskRead,
)
from brokerflow_api.settings import EngineSettings
from brokerflow_api.store import ConflictError, InMemoryStore, NotFoundError, ValidationError

settings = EngineSettings.from_env()
setup_logging(level=settings.log_level, json_output=settings.log_json)
logger = get_logger(__name__)

app = FastAPI(title="brokerflow api", version="0.1.0")
store = InMemoryStore(state_file=settings.state_file)
engine = TaskGraphEngine(
    store,
    settings.interface_rules,
    on_task_unlocked=lambda task: trigger_ai_completion(task, completion_url=settings.completion_url),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    log_fn = logger.info if response.status_code < 400 else logger.warning
    log_fn(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        elapsed_ms=elapsed_ms,
    )
    return response


def _engine_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (CycleDetected, ConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (UnknownDependency, ValidationError)):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


_HANDLED_ERRORS = (NotFoundError, ConflictError, ValidationError, CycleDetected, UnknownDependency, StoreUnavailable)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/tasks", response_model=TaskRead)
def create_task(payload: TaskCreate) -> TaskRead:
    try:
        return engine.provision_task(payload)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/tasks", response_model=list[TaskRead])
def list_tasks(company_id: str | None = None) -> list[TaskRead]:
    return store.list_tasks(company_id=company_id)


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str) -> TaskRead:
    try:
        return store.get_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/tasks/{task_id}/dependencies", response_model=PropagationResult)
def update_task_dependencies(task_id: str, payload: TaskDependenciesUpdate) -> PropagationResult:
    try:
        return engine.rewire_dependencies(task_id, payload)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/tasks/{task_id}/resolved-status", response_model=ResolvedStatusRead)
def get_resolved_status(task_id: str) -> ResolvedStatusRead:
    try:
        return engine.resolve_status(task_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/tasks/{task_id}/interface-type", response_model=InterfaceTypeRead)
def get_interface_type(task_id: str) -> InterfaceTypeRead:
    try:
        return engine.derive_interface_type(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/complete", response_model=PropagationResult)
def complete_task(task_id: str) -> PropagationResult:
    try:
        return engine.complete_task(task_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.post("/tasks/{task_id}/reset", response_model=PropagationResult)
def reset_task(task_id: str) -> PropagationResult:
    try:
        return engine.reset_task(task_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.post("/tasks/{task_id}/propagate", response_model=PropagationResult)
def propagate_task(task_id: str) -> PropagationResult:
    try:
        return engine.propagate(task_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.post("/tasks/{task_id}/artifacts", response_model=list[ArtifactRead])
def record_artifacts(task_id: str, payload: ArtifactBatchCreate) -> list[ArtifactRead]:
    try:
        return store.record_artifacts(task_id, payload.artifacts)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/tasks/{task_id}/artifacts", response_model=list[ArtifactRead])
def list_artifacts(task_id: str) -> list[ArtifactRead]:
    try:
        return store.list_artifacts(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/submissions/synthesize", response_model=SynthesisResult)
def synthesize_submissions(task_id: str) -> SynthesisResult:
    try:
        return engine.synthesize_submissions(task_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/tasks/{task_id}/submissions", response_model=list[SubmissionRead])
def list_submissions(task_id: str) -> list[SubmissionRead]:
    try:
        return store.list_submissions(task_id=task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/companies/{company_id}/refresh-statuses", response_model=PropagationResult)
def refresh_statuses(company_id: str) -> PropagationResult:
    try:
        return engine.refresh_statuses(company_id)
    except _HANDLED_ERRORS as exc:
        raise _engine_http_error(exc) from exc


@app.get("/events", response_model=list[EventRead])
def list_events(
    company_id: str | None = None,
    task_id: str | None = None,
    event_type: str | None = None,
    limit: int = 200,
) -> list[EventRead]:
    return store.list_events(company_id=company_id, task_id=task_id, event_type=event_type, limit=limit)
