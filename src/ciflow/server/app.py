from __future__ import annotations

import logging

from fastapi import BackgroundTasks, FastAPI, HTTPException, Response

from .. import loader, reporter
from ..engine import Orchestrator
from ..errors import LoadError, RunNotFound
from ..model import Run, WorkflowDefinition
from ..settings import Settings
from .schemas import (
    ArtifactOut,
    CreateRunRequest,
    CreateRunResponse,
    ErrorOut,
    RunResponse,
    RunSummary,
)

logger = logging.getLogger(__name__)


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    orch = orchestrator or Orchestrator(settings=Settings.from_env())
    app = FastAPI(title="ciflow control plane")
    app.state.orchestrator = orch

    def _run_or_404(run_id: str) -> Run:
        try:
            return orch.get_run(run_id)
        except RunNotFound:
            raise HTTPException(status_code=404, detail=f"run {run_id} not found") from None

    def _report(run: Run) -> RunResponse:
        return RunResponse(**reporter.snapshot(run).to_dict())

    # -------------------- Endpoints --------------------

    @app.get("/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest, background: BackgroundTasks):
        if (req.definition is None) == (req.definition_yaml is None):
            raise HTTPException(
                status_code=422,
                detail=ErrorOut(
                    kind="invalid_request",
                    message="send exactly one of definition or definition_yaml",
                ).model_dump(),
            )

        try:
            workflow: WorkflowDefinition
            if req.definition is not None:
                workflow = loader.from_document(req.definition)
            else:
                workflow = loader.load_yaml(req.definition_yaml or "")
            run = orch.prepare(workflow, req.event.to_event(), env=req.env, secrets=req.secrets)
        except LoadError as e:
            raise HTTPException(
                status_code=422, detail=ErrorOut(kind=e.kind, message=e.message).model_dump()
            ) from None

        if run is None:
            return CreateRunResponse(triggered=False)

        background.add_task(orch.execute, run)
        return CreateRunResponse(
            triggered=True,
            run_id=run.run_id,
            status=run.status.value,
            instances=[i.instance_id for i in run.instances],
        )

    @app.get("/runs", response_model=list[RunSummary])
    def list_runs():
        return [
            RunSummary(
                run_id=r.run_id,
                workflow=r.workflow.name,
                status=r.status.value,
                concurrency_group=r.concurrency_group,
            )
            for r in orch.runs()
        ]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        try:
            return _report(orch.get_run(run_id))
        except RunNotFound:
            pass
        # runs from earlier processes are only in the history database
        stored = orch.history.get(run_id) if orch.history is not None else None
        if stored is None:
            raise HTTPException(status_code=404, detail=f"run {run_id} not found")
        return RunResponse(**stored)

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel_run(run_id: str):
        run = _run_or_404(run_id)
        orch.cancel(run_id, "cancelled via API")
        logger.info("run %s cancel requested via API", run_id)
        return _report(run)

    @app.get("/runs/{run_id}/artifacts/{name}", response_model=list[ArtifactOut])
    def list_artifacts(run_id: str, name: str):
        _run_or_404(run_id)
        refs = orch.artifacts.find(run_id, name)
        if not refs:
            raise HTTPException(status_code=404, detail=f"no artifact '{name}' in run {run_id}")
        return [ArtifactOut(**ref.to_dict()) for ref in refs]

    @app.get("/runs/{run_id}/artifacts/{name}/{instance_id}")
    def download_artifact(run_id: str, name: str, instance_id: str):
        _run_or_404(run_id)
        for ref in orch.artifacts.find(run_id, name):
            if ref.job_instance_id == instance_id:
                return Response(
                    content=orch.artifacts.get(ref),
                    media_type="application/octet-stream",
                    headers={"X-Artifact-Digest": ref.digest},
                )
        raise HTTPException(
            status_code=404,
            detail=f"no artifact '{name}' from '{instance_id}' in run {run_id}",
        )

    return app
