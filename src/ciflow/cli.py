# cli.py
from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, List, Tuple
from urllib.parse import urljoin

import click

from . import loader, matrix
from .engine import Orchestrator
from .errors import LoadError
from .git_facts.git import local_event, repo_root
from .history import RunHistory
from .model import EventKind, RunEvent, RunStatus
from .reporter import RunReport
from .settings import Settings
from .triggers import PathConflictPolicy
from .ui.console import Console, ConsoleListener, get_console, set_console

DEFAULT_WORKFLOW_FILES = ("ciflow.yml", "ciflow.yaml", "ciflow_workflow.py")


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Find workflow files in `root`.

    Looks for the default names first, then `.ciflow/*.yml` and `*_workflow.py`.
    """
    found: List[Path] = [root / name for name in DEFAULT_WORKFLOW_FILES if (root / name).exists()]
    for pattern in (".ciflow/*.yml", ".ciflow/*.yaml", "*_workflow.py"):
        for path in sorted(root.glob(pattern)):
            if path not in found:
                found.append(path)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the argument, or discover the single one.

    Raises:
        SystemExit: If no workflow (or more than one) can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  ciflow run my_workflow.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES), "  .ciflow/*.yml", "  *_workflow.py"],
            suggestion="Create ciflow.yml, or specify a workflow explicitly:\n  ciflow run my_workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  ciflow run ciflow.yml",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_or_exit(workflow_path: Path):
    console = get_console()
    try:
        return loader.load_file(workflow_path)
    except LoadError as e:
        console.print_error(
            "Invalid workflow",
            f"Could not load workflow from {workflow_path}",
            details=[f"{e.kind}: {e.message}"],
        )
        sys.exit(1)


def _parse_pairs(pairs: Tuple[str, ...], option: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint=option)
        out[key] = value
    return out


def _secrets_from_env(names: Tuple[str, ...]) -> Dict[str, str]:
    # values are taken from this process's environment and never printed
    missing = [n for n in names if n not in os.environ]
    if missing:
        raise click.BadParameter(f"not set in the environment: {', '.join(missing)}", param_hint="--secret")
    return {n: os.environ[n] for n in names}


def _build_event(
    kind: str,
    ref: str | None,
    base_ref: str | None,
    changed: Tuple[str, ...],
    git_diff: bool,
    compare_ref: str,
) -> RunEvent:
    event_kind = EventKind(kind)
    if git_diff:
        event = local_event(kind=event_kind, ref=ref, compare_ref=compare_ref, base_ref=base_ref)
        if changed:
            event = RunEvent(
                kind=event.kind,
                ref=event.ref,
                changed_paths=changed,
                commit=event.commit,
                base_ref=event.base_ref,
            )
        return event
    return RunEvent(
        kind=event_kind,
        ref=ref or "refs/heads/main",
        changed_paths=changed,
        base_ref=base_ref,
    )


def _repository_name() -> str:
    try:
        return repo_root().name
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
def cli(debug):
    """ciflow: dependency-aware CI pipeline orchestration."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug))


event_options = [
    click.option(
        "--event",
        "event_kind",
        type=click.Choice([k.value for k in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Event that triggers the run",
    ),
    click.option("--ref", default=None, help="Git ref, e.g. refs/heads/main (defaults to main, or HEAD with --git-diff)"),
    click.option("--base-ref", default=None, help="Base branch of a pull request"),
    click.option("--changed", multiple=True, help="Changed path (repeatable); overrides git diff"),
    click.option("--git-diff/--no-git-diff", default=False, help="Build the event from the local git checkout"),
    click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
]


def with_event_options(fn):
    for option in reversed(event_options):
        fn = option(fn)
    return fn


@cli.command()
@click.argument("workflow", required=False)
@with_event_options
@click.option("--workers", default=None, type=int, help="Maximum job instances running at once")
@click.option("--artifact-dir", default=None, help="Persist artifacts under this directory")
@click.option("--timeout", "step_timeout", default=None, type=float, help="Default step timeout in seconds")
@click.option(
    "--path-policy",
    type=click.Choice([p.value for p in PathConflictPolicy]),
    default=None,
    help="Which filter wins when a path matches both paths and paths-ignore",
)
@click.option("--env", "env_pairs", multiple=True, help="Run env variable KEY=VALUE (repeatable)")
@click.option("--secret", "secret_names", multiple=True, help="Pass this environment variable to steps as a secret")
@click.option("--db", "database_url", default=None, help="Record the run in this history database (SQLAlchemy URL)")
def run(
    workflow, event_kind, ref, base_ref, changed, git_diff, compare_ref,
    workers, artifact_dir, step_timeout, path_policy, env_pairs, secret_names, database_url,
):
    """Run a ciflow workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)

    base = Settings.from_env()
    settings = Settings(
        max_parallel=workers if workers is not None else base.max_parallel,
        artifact_dir=Path(artifact_dir) if artifact_dir else base.artifact_dir,
        step_timeout=step_timeout if step_timeout is not None else base.step_timeout,
        path_policy=PathConflictPolicy(path_policy) if path_policy else base.path_policy,
        workspace=base.workspace,
        database_url=database_url or base.database_url,
    )

    try:
        env = _parse_pairs(env_pairs, "--env")
        secrets = _secrets_from_env(secret_names)
        event = _build_event(event_kind, ref, base_ref, changed, git_diff, compare_ref)

        orchestrator = Orchestrator(settings=settings, listener=ConsoleListener(console))
        console.print_debug(
            f"event: {event.kind.value} {event.ref} ({len(event.changed_paths)} changed path(s))"
        )
        prepared = orchestrator.prepare(definition, event, env=env, secrets=secrets)
        if prepared is None:
            console.print_not_triggered(definition.name, event.kind.value, event.ref)
            sys.exit(0)

        console.print_run_started(
            repository=_repository_name(),
            workflow=workflow_path.name,
            run_id=prepared.run_id,
            instance_count=len(prepared.instances),
        )

        try:
            report = orchestrator.execute(prepared)
        except KeyboardInterrupt:
            prepared.cancel("interrupted by user")
            raise

        console.print_results(report)
        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except click.ClickException:
        raise
    except subprocess.CalledProcessError as e:
        console.print_error(
            "Git command failed",
            f"Could not read the local checkout: {e}",
            suggestion="Run inside a git repository, or pass --ref/--changed without --git-diff.",
        )
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
def validate(workflow):
    """Check a workflow definition without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)
    console.print_info(f"OK: {workflow_path} ({definition.name}, {len(definition.jobs)} job(s))")


@cli.command()
@click.argument("workflow", required=False)
def plan(workflow):
    """Print stages and expanded job instances."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(workflow_path)

    instances = {
        j.name: [matrix.instance_id(j.name, b) for b in matrix.expand(j)]
        for j in definition.jobs
    }
    console.print_plan(definition.graph.levels(), instances)


@cli.command()
@click.argument("run_id", required=False)
@click.option("--db", "database_url", default=None, help="History database URL (defaults to CIFLOW_DATABASE_URL)")
@click.option("--limit", default=20, type=int, show_default=True, help="How many recent runs to list")
def history(run_id, database_url, limit):
    """List recorded runs, or show one run's report."""
    console = get_console()
    url = database_url or Settings.from_env().database_url
    if not url:
        console.print_error(
            "No history database",
            "Run history is disabled.",
            suggestion="Pass --db sqlite:///ciflow.db or set CIFLOW_DATABASE_URL.",
        )
        sys.exit(1)

    store = RunHistory(url)
    try:
        if run_id is None:
            console.print_history(store.list(limit=limit))
            return
        stored = store.get(run_id)
        if stored is None:
            console.print_error("Run not found", f"No recorded run with id {run_id}")
            sys.exit(1)
        console.print_results(
            RunReport(
                run_id=stored["run_id"],
                workflow=stored["workflow"],
                status=RunStatus(stored["status"]),
                exit_code=stored["exit_code"],
                jobs=stored["jobs"],
                duration=stored["duration"],
            )
        )
    finally:
        store.close()


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(host, port):
    """Serve the HTTP control plane."""
    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(), host=host, port=port)


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.argument("workflow", required=False)
@with_event_options
def submit(api, workflow, event_kind, ref, base_ref, changed, git_diff, compare_ref):
    """Submit a YAML workflow run to a ciflow server."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    if workflow_path.suffix not in loader.YAML_SUFFIXES:
        console.print_error(
            "Unsupported workflow file",
            "Only YAML workflows can be submitted to a server.",
            details=[str(workflow_path)],
        )
        sys.exit(1)

    # validate locally first so mistakes surface without a round trip
    _load_or_exit(workflow_path)

    try:
        event = _build_event(event_kind, ref, base_ref, changed, git_diff, compare_ref)
    except subprocess.CalledProcessError as e:
        console.print_error("Git command failed", f"Could not read the local checkout: {e}")
        sys.exit(1)

    request_data = {
        "definition_yaml": workflow_path.read_text(encoding="utf-8"),
        "event": {
            "kind": event.kind.value,
            "ref": event.ref,
            "changed_paths": list(event.changed_paths),
            "commit": event.commit,
            "base_ref": event.base_ref,
        },
    }

    base_url = api.rstrip("/")
    url = urljoin(base_url + "/", "runs")
    req = urllib.request.Request(
        url,
        data=json.dumps(request_data).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    try:
        with urllib.request.urlopen(req) as response:
            result = json.loads(response.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the server is running (ciflow serve).",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error("Invalid API response", "Could not parse JSON response from API.", details=[str(e)])
        sys.exit(1)

    if not result.get("triggered"):
        console.print_info("Server accepted the workflow but the event does not trigger it.")
        return

    console.print_info(f"\nSuccessfully submitted run to {base_url}")
    console.print_info(f"  Run ID: {result.get('run_id')}")
    console.print_info(f"  Instances: {', '.join(result.get('instances', []))}")


if __name__ == "__main__":
    cli()
