from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from ..cache import CacheStore
from ..model import Event, EventKind, RunVerdict, Workflow
from ..orchestrator import DEFAULT_KEEP_FINISHED, Orchestrator, RunHandle, RunSupervisor
from ..report import render_report
from ..settings import Settings
from ..triggers import match_jobs
from ..ui.console import get_console

# -------------------- Schemas --------------------

class EventRequest(BaseModel):
    kind: EventKind
    branch: str
    source_branch: Optional[str] = None
    sha: Optional[str] = None

class RunAccepted(BaseModel):
    run_id: Optional[str]
    jobs: list[str]
    noop: bool = False

class JobResultResponse(BaseModel):
    job: str
    outcome: str
    failed_step: Optional[str]
    duration: float
    error: Optional[str]
    cache_hit: bool

class RunResponse(BaseModel):
    run_id: str
    event: str
    status: str
    superseded_by: Optional[str] = None
    failing_jobs: list[str] = Field(default_factory=list)
    results: list[JobResultResponse] = Field(default_factory=list)
    report: Optional[str] = None


def _run_response(handle: RunHandle) -> RunResponse:
    verdict: Optional[RunVerdict] = handle.verdict
    resp = RunResponse(
        run_id=handle.run_id,
        event=handle.event.describe(),
        status=handle.status,
        superseded_by=handle.superseded_by,
    )
    if verdict is not None:
        resp.failing_jobs = verdict.failing_jobs
        resp.results = [
            JobResultResponse(
                job=r.job,
                outcome=r.outcome.value,
                failed_step=r.failed_step,
                duration=r.duration,
                error=r.error,
                cache_hit=r.cache_hit,
            )
            for r in verdict.results
        ]
        resp.report = render_report(verdict)
    return resp


def create_app(
    workflow: Workflow,
    settings: Optional[Settings] = None,
    *,
    max_runs: int = 4,
    keep_runs: int = DEFAULT_KEEP_FINISHED,
) -> FastAPI:
    """
    Webhook front-end: events in, background runs out.

    A newer push to the same branch, or a newer event for the same pull
    request, supersedes (cancels) the run still in flight for it. Only the
    newest `keep_runs` finished runs stay queryable.
    """
    settings = settings or Settings.from_env()
    orchestrator = Orchestrator(CacheStore(settings.cache_dir), settings, get_console())
    supervisor = RunSupervisor(orchestrator, workflow, max_runs=max_runs, keep_finished=keep_runs)

    app = FastAPI(title="mergegate webhook service")
    app.state.supervisor = supervisor
    app.state.workflow = workflow

    def _accept(event: Event) -> RunAccepted:
        jobs = [j.name for j in match_jobs(event, workflow)]
        if not jobs:
            return RunAccepted(run_id=None, jobs=[], noop=True)
        handle = supervisor.submit(event)
        return RunAccepted(run_id=handle.run_id, jobs=jobs)

    @app.on_event("shutdown")
    def shutdown() -> None:
        supervisor.shutdown(cancel_running=True)

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "workflow": workflow.name,
            "jobs": [j.name for j in workflow.jobs],
            "active_runs": [h.run_id for h in supervisor.active()],
        }

    @app.post("/events", response_model=RunAccepted, status_code=202)
    def post_event(req: EventRequest):
        event = Event(kind=req.kind, branch=req.branch, source_branch=req.source_branch, sha=req.sha)
        return _accept(event)

    @app.post("/webhook", response_model=RunAccepted, status_code=202)
    async def webhook(request: Request, x_github_event: str = Header(...)):
        if x_github_event == "ping":
            return RunAccepted(run_id=None, jobs=[], noop=True)
        payload: dict[str, Any] = await request.json()
        try:
            event = Event.from_webhook(x_github_event, payload)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"unsupported event {x_github_event!r}")
        return _accept(event)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        handle = supervisor.get(run_id)
        if handle is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return _run_response(handle)

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel_run(run_id: str):
        handle = supervisor.get(run_id)
        if handle is None:
            raise HTTPException(status_code=404, detail="Run not found")
        handle.cancel_run()
        return _run_response(handle)

    return app
