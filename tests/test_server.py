"""Tests for the HTTP control plane."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from ciflow.engine import Orchestrator
from ciflow.model import RunEvent
from ciflow.runners import StepOutput
from ciflow.server import create_app
from ciflow.settings import Settings

from conftest import FakeRunner

# pylint: disable=redefined-outer-name

YAML = """
name: api-demo
on:
  push:
    branches: [main]
jobs:
  build:
    strategy:
      matrix:
        java: [17, 21]
    steps:
      - name: package
        run: mvn -Djava=${{ matrix.java }} package
"""


@pytest.fixture
def orchestrator() -> Orchestrator:
    runner = FakeRunner({"package": lambda inv: StepOutput(artifacts={"jar": inv.run.encode()})})
    return Orchestrator(runner=runner, settings=Settings())


@pytest.fixture
def client(orchestrator: Orchestrator) -> TestClient:
    return TestClient(create_app(orchestrator))


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"ok": True}


class TestCreateRun:
    def test_yaml_run_completes(self, client: TestClient) -> None:
        """Background execution finishes before the test client returns."""
        r = client.post("/runs", json={"definition_yaml": YAML})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["triggered"] is True
        assert body["instances"] == ["build (17)", "build (21)"]

        run = client.get(f"/runs/{body['run_id']}").json()
        assert run["status"] == "succeeded"
        assert run["exit_code"] == 0
        assert [j["id"] for j in run["jobs"]] == ["build (17)", "build (21)"]
        assert run["jobs"][0]["matrix"] == {"java": 17}

    def test_mapping_definition(self, client: TestClient) -> None:
        doc = {"jobs": {"hello": {"steps": [{"name": "greet", "run": "echo hi"}]}}}
        r = client.post("/runs", json={"definition": doc, "event": {"ref": "refs/heads/dev"}})
        assert r.json()["triggered"] is True

    def test_not_triggered(self, client: TestClient, orchestrator: Orchestrator) -> None:
        r = client.post("/runs", json={"definition_yaml": YAML, "event": {"ref": "refs/heads/feature/x"}})
        assert r.status_code == 200
        assert r.json() == {"triggered": False, "run_id": None, "status": None, "instances": []}
        assert orchestrator.runs() == []

    def test_invalid_definition(self, client: TestClient) -> None:
        doc = {"jobs": {"a": {"needs": "ghost", "steps": [{"run": "x"}]}}}
        r = client.post("/runs", json={"definition": doc})
        assert r.status_code == 422
        assert r.json()["detail"]["kind"] == "unknown_dependency"

    def test_invalid_yaml(self, client: TestClient) -> None:
        r = client.post("/runs", json={"definition_yaml": "jobs: [unclosed"})
        assert r.status_code == 422
        assert r.json()["detail"]["kind"] == "invalid_definition"

    @pytest.mark.parametrize("payload", [{}, {"definition": {"jobs": {}}, "definition_yaml": YAML}])
    def test_exactly_one_definition(self, client: TestClient, payload: dict) -> None:
        r = client.post("/runs", json=payload)
        assert r.status_code == 422
        assert r.json()["detail"]["kind"] == "invalid_request"


class TestRunsAndArtifacts:
    def test_list_runs(self, client: TestClient) -> None:
        run_id = client.post("/runs", json={"definition_yaml": YAML}).json()["run_id"]
        runs = client.get("/runs").json()
        assert [r["run_id"] for r in runs] == [run_id]
        assert runs[0]["workflow"] == "api-demo"

    def test_unknown_run(self, client: TestClient) -> None:
        assert client.get("/runs/missing").status_code == 404
        assert client.post("/runs/missing/cancel").status_code == 404

    def test_artifacts(self, client: TestClient) -> None:
        run_id = client.post("/runs", json={"definition_yaml": YAML}).json()["run_id"]

        listed = client.get(f"/runs/{run_id}/artifacts/jar").json()
        assert [a["job_instance_id"] for a in listed] == ["build (17)", "build (21)"]

        r = client.get(f"/runs/{run_id}/artifacts/jar/build (21)")
        assert r.status_code == 200
        assert r.content == b"mvn -Djava=21 package"
        assert r.headers["x-artifact-digest"] == listed[1]["digest"]

        assert client.get(f"/runs/{run_id}/artifacts/nope").status_code == 404
        assert client.get(f"/runs/{run_id}/artifacts/jar/build (99)").status_code == 404

    def test_cancel_queued_run(self, client: TestClient, orchestrator: Orchestrator) -> None:
        run = orchestrator.prepare(YAML, RunEvent())
        r = client.post(f"/runs/{run.run_id}/cancel")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "cancelled"
        assert body["exit_code"] == 2
        assert {j["status"] for j in body["jobs"]} == {"cancelled"}


def test_finished_run_served_from_history(tmp_path) -> None:
    """Runs unknown to this process are looked up in the history database."""
    url = f"sqlite:///{tmp_path / 'history.db'}"
    earlier = Orchestrator(runner=FakeRunner(), settings=Settings(database_url=url))
    report = earlier.dispatch(YAML, RunEvent())

    client = TestClient(create_app(Orchestrator(runner=FakeRunner(), settings=Settings(database_url=url))))
    body = client.get(f"/runs/{report.run_id}").json()
    assert body["status"] == "succeeded"
    assert [j["id"] for j in body["jobs"]] == ["build (17)", "build (21)"]
