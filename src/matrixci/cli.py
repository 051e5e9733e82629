# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from matrixci import settings
from matrixci.context import RunContext, TriggerInfo
from matrixci.errors import MatrixCIError
from matrixci.git_facts.git import current_branch, remote_url
from matrixci.matrix import expand
from matrixci.report import EventPayload, RunReport
from matrixci.runner import load_workflow
from matrixci.scheduler import Pipeline
from matrixci.secrets import EnvSecretProvider
from matrixci.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / settings.WORKFLOW_FILE
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path.resolve() != default_workflow.resolve():
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {settings.WORKFLOW_FILE}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {settings.WORKFLOW_FILE}\n\nOr specify one explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {settings.WORKFLOW_FILE}",
        )
        sys.exit(1)

    return workflow_files[0]


def _repo_name() -> str:
    try:
        url = remote_url("origin")
        return url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return Path(".").resolve().name


def _build_trigger(event, ref, base, head, changed_files, event_file) -> TriggerInfo:
    if event_file:
        payload = EventPayload.model_validate_json(Path(event_file).read_text(encoding="utf-8"))
        trigger = payload.to_trigger(event)
    else:
        if not ref:
            try:
                ref = current_branch()
            except (subprocess.CalledProcessError, FileNotFoundError):
                ref = ""
        trigger = TriggerInfo(event=event, ref=ref, base=base, head=head)
    if changed_files:
        trigger = TriggerInfo(
            event=trigger.event,
            ref=trigger.ref,
            base=trigger.base,
            head=trigger.head,
            changed_files=tuple(changed_files),
        )
    return trigger


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: matrix-aware pipeline runner with gated releases."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Number of parallel workers")
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--ref", "--branch", "ref", default=None, help="Triggering branch or ref (defaults to the current branch)")
@click.option("--base", default=None, help="Base commit of the triggering range")
@click.option("--head", default="HEAD", show_default=True, help="Head commit of the triggering range")
@click.option("--changed-file", "changed_files", multiple=True, help="Changed path (skips asking git; repeatable)")
@click.option("--event-file", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON webhook payload with ref/before/after")
@click.option("--secret", "secrets", multiple=True, help="Environment variable exposed as a secret (repeatable)")
@click.option("--report", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report here")
@click.option("--artifacts-dir", default=settings.ARTIFACTS_DIR, envvar="MATRIXCI_ARTIFACTS_DIR", help="Export artifacts to this directory")
@click.pass_context
def run(ctx, workflow, workers, event, ref, base, head, changed_files, event_file, secrets, report, artifacts_dir):
    """Run a matrixci workflow."""
    console = get_console()

    workflow_path = discover_workflow(workflow)

    pipeline = None
    try:
        jobs = load_workflow(workflow_path)
        trigger = _build_trigger(event, ref, base, head, changed_files, event_file)

        context = RunContext(
            trigger=trigger,
            secrets=EnvSecretProvider(secrets),
            repo_root=Path(".").resolve(),
        )
        pipeline = Pipeline(jobs, context, max_workers=workers)

        console.print_run_started(
            repository=_repo_name(),
            workflow=workflow_path.name,
            job_count=len(jobs),
            event=trigger.event,
            ref=trigger.ref,
        )

        result = pipeline.run()
        console.print_results(result)

        if report:
            RunReport.from_result(result).write(report)
            console.print_info(f"Report written to {report}")
        if artifacts_dir:
            written = result.store.export(artifacts_dir)
            console.print_info(f"Exported {len(written)} artifact(s) to {artifacts_dir}")

        if not result.success:
            sys.exit(1)

    except KeyboardInterrupt:
        if pipeline is not None:
            pipeline.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ValidationError as e:
        console.print_error("Invalid event file", f"Could not parse {event_file}", details=[str(e)])
        sys.exit(1)
    except (MatrixCIError, ValueError, TypeError, FileNotFoundError) as e:
        console.print_error("Workflow error", str(e))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path (defaults to matrixci_workflow.py if present)")
@click.pass_context
def plan(ctx, workflow):
    """Validate a workflow and print its stages and matrix instances."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        jobs = load_workflow(workflow_path)
        stages = Pipeline(jobs).validate()
    except (MatrixCIError, ValueError, TypeError, FileNotFoundError) as e:
        console.print_error("Invalid workflow", str(e))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)

    by_name = {j.name: j for j in jobs}
    for idx, stage in enumerate(stages, start=1):
        console.print_header(f"Stage {idx}")
        for name in stage:
            j = by_name[name]
            console.print_plan_job(name, [i.id for i in expand(j)] if j.axes else [], j.upstream)
            if j.gate is not None:
                console.print_info(f"    gate: {j.gate!r}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
