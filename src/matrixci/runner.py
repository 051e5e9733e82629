# runner.py
from __future__ import annotations

import os
import runpy
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .artifacts import ArtifactStore
from .context import RunContext, StepContext
from .errors import ContractError, StepFailure
from .matrix import render
from .model import InstanceResult, Job, JobInstance, Status, Step, StepResult
from .ui.console import get_console

OUTPUT_ENV = "MATRIXCI_OUTPUT"
SUMMARY_ENV = "MATRIXCI_STEP_SUMMARY"

TOOL_HINTS = {
    "uv": "Install uv (https://docs.astral.sh/uv/) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "coverage": "Install coverage (e.g., pip install coverage).",
    "minisign": "Install minisign or drop the signing step.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )

    return jobs


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _hint_for(cmd: str) -> str | None:
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    return TOOL_HINTS.get(tool)


def _read_outputs(path: Path) -> Dict[str, str]:
    """Parse name=value lines written by a shell step."""
    out: Dict[str, str] = {}
    if not path.exists():
        return out
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        if "=" not in line:
            raise ContractError(f"Malformed output line (expected name=value): {line!r}")
        key, value = line.split("=", 1)
        out[key.strip()] = value
    return out


def _run_shell_step(step: Step, ctx: StepContext, scratch: Path) -> None:
    job, instance = ctx.job, ctx.instance
    matrix = instance.matrix

    cwd = (ctx.run.repo_root / render(step.cwd or ".", matrix)).resolve()
    if not cwd.exists():
        raise StepFailure(job=instance.id, step=step.name, kind="exception",
                          message=f"cwd not found: {cwd}")

    output_file = scratch / "output"
    summary_file = scratch / "summary"
    output_file.write_text("", encoding="utf-8")
    summary_file.write_text("", encoding="utf-8")

    env = os.environ.copy()
    env.update(ctx.env)
    env.update({k: render(v, matrix) for k, v in step.env.items()})
    if step.requires_secret:
        env[step.requires_secret] = ctx.secret(step.requires_secret) or ""
    env[OUTPUT_ENV] = str(output_file)
    env[SUMMARY_ENV] = str(summary_file)

    cmd = render(step.run, matrix)
    try:
        proc = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
            timeout=step.timeout,
        )
    except subprocess.TimeoutExpired:
        raise StepFailure(job=instance.id, step=step.name, kind="timeout",
                          message=f"exceeded {step.timeout}s: {cmd}")

    if proc.returncode != 0:
        details = {"stderr": proc.stderr[-4000:]} if proc.stderr else {}
        hint = _hint_for(cmd) if proc.returncode == 127 else None
        if hint:
            details["hint"] = hint
        raise StepFailure(job=instance.id, step=step.name, kind="exit",
                          message=cmd, exit_code=proc.returncode, details=details)

    for name, value in _read_outputs(output_file).items():
        ctx.set_output(name, value, coerce=True)
    summary = summary_file.read_text(encoding="utf-8").strip()
    if summary:
        ctx.summary(summary)

    for art_name, rel in step.publishes.items():
        src = cwd / render(rel, matrix)
        if not src.is_file():
            raise StepFailure(job=instance.id, step=step.name, kind="missing-artifact",
                              message=f"artifact '{art_name}' file not found: {src}")
        ctx.publish(render(art_name, matrix), src.read_bytes())


def _run_callable_step(step: Step, ctx: StepContext) -> None:
    if step.timeout is None:
        step.run(ctx)
        return

    # Python code cannot be preempted; run it aside and stop waiting after the limit.
    # The step gets its own view of the context, closed once it is abandoned.
    view = ctx.detached()
    box: Dict[str, BaseException] = {}

    def _target() -> None:
        try:
            step.run(view)
        except BaseException as e:  # re-raised on the runner thread
            box["error"] = e

    t = threading.Thread(target=_target, name=f"{ctx.instance.id}:{step.name}", daemon=True)
    t.start()
    t.join(step.timeout)
    if t.is_alive():
        view.close()
        raise StepFailure(job=ctx.instance.id, step=step.name, kind="timeout",
                          message=f"exceeded {step.timeout}s")
    if "error" in box:
        raise box["error"]


def _run_step(step: Step, ctx: StepContext, scratch: Path) -> None:
    try:
        if step.is_shell:
            _run_shell_step(step, ctx, scratch)
        else:
            _run_callable_step(step, ctx)
    except StepFailure:
        raise
    except Exception as e:
        raise StepFailure(job=ctx.instance.id, step=step.name, kind="exception",
                          message=f"{type(e).__name__}: {e}") from e


def run_instance(
    job: Job,
    instance: JobInstance,
    run: RunContext,
    store: ArtifactStore,
    *,
    inputs: Dict[str, Any] | None = None,
    upstream: Set[str] | None = None,
    stop: Optional[threading.Event] = None,
) -> InstanceResult:
    """
    Run one instance's steps in order.

    Stops at the first failing step. Whatever earlier steps published or set
    is kept. `stop` is checked at every step boundary (sibling fail-fast);
    run cancellation is checked the same way.
    """
    console = get_console()
    inputs = dict(inputs or {})
    env = {k: render(v, instance.matrix) for k, v in job.env.items()}
    env.update({k: str(v) for k, v in inputs.items()})

    ctx = StepContext(job, instance, run, store, env=env, inputs=inputs, upstream=set(upstream or ()))
    result = InstanceResult(instance=instance, status=Status.SUCCESS)

    console.print_instance_start(instance.id)
    with tempfile.TemporaryDirectory(prefix="matrixci-") as tmp:
        scratch = Path(tmp)
        for idx, step in enumerate(job.steps):
            if run.cancelled or (stop is not None and stop.is_set()):
                why = "run cancelled" if run.cancelled else "sibling instance failed"
                result.status = Status.CANCELLED
                result.reason = why
                result.steps.extend(StepResult(s.name, "skipped", why) for s in job.steps[idx:])
                break

            if step.requires_secret and run.secrets.get(step.requires_secret) is None:
                reason = f"secret {step.requires_secret} not supplied"
                console.print_step_skipped(instance.id, step.name, reason)
                result.steps.append(StepResult(step.name, "skipped", reason))
                continue

            console.print_step(instance.id, step.name)
            started = time.monotonic()
            try:
                _run_step(step, ctx, scratch)
            except StepFailure as failure:
                elapsed = time.monotonic() - started
                result.steps.append(StepResult(step.name, "failure", str(failure), elapsed))
                if step.continue_on_error:
                    console.print_step_failed(instance.id, failure, ignored=True)
                    continue
                console.print_step_failed(instance.id, failure)
                result.status = Status.FAILURE
                result.reason = f"step '{step.name}' failed"
                result.error = failure
                result.steps.extend(StepResult(s.name, "skipped", "earlier step failed")
                                    for s in job.steps[idx + 1:])
                break
            result.steps.append(StepResult(step.name, "success", "", time.monotonic() - started))

    ctx.close()
    result.outputs = dict(ctx.outputs)
    result.summary = list(ctx.summaries)
    return result
