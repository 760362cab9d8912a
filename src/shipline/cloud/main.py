from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..errors import ApprovalError
from ..gate import EnvironmentGate
from ..model import ApprovalRequest, ApprovalState, JobRecord, Release, RunRecord
from ..settings import DATABASE_URL
from ..store import Store, StoreError

# -------------------- Schemas --------------------

class JobResponse(BaseModel):
    name: str
    status: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    log: str = ""
    approval_id: Optional[str] = None

class RunSummary(BaseModel):
    run_id: str
    pipeline: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: Optional[str] = None

class RunResponse(RunSummary):
    jobs: list[JobResponse]

class ApprovalResponse(BaseModel):
    request_id: str
    run_id: str
    job: str
    environment: str
    required: list[str]
    granted: list[str]
    state: str
    rejected_by: Optional[str] = None
    created_at: datetime
    closed_at: Optional[datetime] = None

class ApprovalAction(BaseModel):
    identity: str = Field(min_length=1)

class ReleaseResponse(BaseModel):
    tag: str
    commit: str
    notes: str
    artifacts: list[str]
    created_at: datetime

# -------------------- Conversions --------------------

def _job(rec: JobRecord) -> JobResponse:
    return JobResponse(
        name=rec.name,
        status=rec.status.value,
        started_at=rec.started_at,
        finished_at=rec.finished_at,
        error_kind=rec.error_kind,
        error=rec.error,
        log=rec.log,
        approval_id=rec.approval_id,
    )

def _summary(r: RunRecord) -> RunSummary:
    return RunSummary(
        run_id=r.run_id,
        pipeline=r.pipeline,
        started_at=r.started_at,
        finished_at=r.finished_at,
        outcome=r.outcome.value if r.outcome else None,
    )

def _approval(req: ApprovalRequest) -> ApprovalResponse:
    return ApprovalResponse(
        request_id=req.request_id,
        run_id=req.run_id,
        job=req.job,
        environment=req.environment,
        required=sorted(req.required),
        granted=sorted(req.granted),
        state=req.state.value,
        rejected_by=req.rejected_by,
        created_at=req.created_at,
        closed_at=req.closed_at,
    )

def _release(rel: Release) -> ReleaseResponse:
    return ReleaseResponse(
        tag=rel.tag,
        commit=rel.commit,
        notes=rel.notes,
        artifacts=list(rel.artifacts),
        created_at=rel.created_at,
    )

# -------------------- App --------------------

def get_store(request: Request) -> Store:
    app = request.app
    if app.state.store is None:
        app.state.store = Store(DATABASE_URL)
    return app.state.store

def get_gate(store: Store = Depends(get_store)) -> EnvironmentGate:
    return EnvironmentGate(store)


def create_app(store: Optional[Store] = None) -> FastAPI:
    app = FastAPI(title="shipline control plane")
    app.state.store = store

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs(limit: int = Query(50, ge=1, le=500), store: Store = Depends(get_store)):
        return [_summary(r) for r in store.list_runs(limit)]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str, store: Store = Depends(get_store)):
        record = store.get_run(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunResponse(**_summary(record).model_dump(), jobs=[_job(j) for j in record.jobs.values()])

    @app.get("/runs/{run_id}/jobs/{name}", response_model=JobResponse)
    def get_job(run_id: str, name: str, store: Store = Depends(get_store)):
        rec = store.get_job(run_id, name)
        if rec is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job(rec)

    @app.get("/approvals", response_model=list[ApprovalResponse])
    def list_approvals(state: Optional[ApprovalState] = None, gate: EnvironmentGate = Depends(get_gate)):
        return [_approval(r) for r in gate.list(state)]

    @app.get("/approvals/{request_id}", response_model=ApprovalResponse)
    def get_approval(request_id: str, gate: EnvironmentGate = Depends(get_gate)):
        req = gate.get(request_id)
        if req is None:
            raise HTTPException(status_code=404, detail="Approval request not found")
        return _approval(req)

    @app.post("/approvals/{request_id}/approve", response_model=ApprovalResponse)
    def approve(request_id: str, body: ApprovalAction, gate: EnvironmentGate = Depends(get_gate)):
        return _approval(_act(gate.approve, request_id, body.identity))

    @app.post("/approvals/{request_id}/reject", response_model=ApprovalResponse)
    def reject(request_id: str, body: ApprovalAction, gate: EnvironmentGate = Depends(get_gate)):
        return _approval(_act(gate.reject, request_id, body.identity))

    @app.get("/releases", response_model=list[ReleaseResponse])
    def list_releases(store: Store = Depends(get_store)):
        return [_release(r) for r in store.list_releases()]

    @app.get("/releases/{tag}", response_model=ReleaseResponse)
    def get_release(tag: str, store: Store = Depends(get_store)):
        rel = store.get_release(tag)
        if rel is None:
            raise HTTPException(status_code=404, detail="Release not found")
        return _release(rel)

    return app


_ERROR_STATUS = {"unknown": 404, "forbidden": 403, "closed": 409}


def _act(action, request_id: str, identity: str) -> ApprovalRequest:
    try:
        return action(request_id, identity)
    except ApprovalError as e:
        status = _ERROR_STATUS.get(e.details.get("reason"), 409)
        raise HTTPException(status_code=status, detail=e.message)
    except StoreError as e:
        # lost a write race the store could not resolve; the client may retry
        raise HTTPException(status_code=409, detail=str(e))


app = create_app()
