# dsl.py
from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import settings
from .context import StepContext
from .gate import ReleaseGate
from .matrix import render
from .model import Job, MatrixAxis, Step


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    publishes: Optional[Dict[str, str]] = None,
    requires_secret: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """Shell step. `{{ matrix.<axis> }}` in cmd/env/publishes is filled in per instance."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=env or {},
        timeout=timeout,
        publishes=publishes or {},
        requires_secret=requires_secret,
        continue_on_error=continue_on_error,
    )


def task(
    name: str,
    fn: Callable[[StepContext], Any],
    *,
    timeout: float | None = None,
    requires_secret: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """Python step: fn(ctx) runs in-process; raising fails the step."""
    return Step(
        name=name,
        run=fn,
        timeout=timeout,
        requires_secret=requires_secret,
        continue_on_error=continue_on_error,
    )


def upload(path: str, artifact: str | None = None, *, name: str | None = None) -> Step:
    """
    Publish workspace files as artifacts.

    A plain path is published under `artifact` (default: the file name). A
    glob publishes every matching file under its own file name.
    """

    def _upload(ctx: StepContext) -> None:
        root = ctx.run.repo_root
        rel = render(path, ctx.matrix)
        if any(ch in rel for ch in "*?["):
            files = [p for p in sorted(root.glob(rel)) if p.is_file()]
            if not files:
                raise FileNotFoundError(f"Nothing to upload matching {rel}")
            for f in files:
                ctx.publish(f.name, f.read_bytes())
            return
        src = root / rel
        if not src.is_file():
            raise FileNotFoundError(f"Nothing to upload at {src}")
        ctx.publish(render(artifact, ctx.matrix) if artifact else src.name, src.read_bytes())

    return task(name or f"Upload {artifact or path}", _upload)


def download(job: str, artifact: str, dest: str = ".", *, name: str | None = None) -> Step:
    """
    Write an upstream job's artifacts into the workspace.

    `artifact` is a glob; every instance's matching artifacts land in `dest`
    (merge-multiple). Two producers writing the same file name is an error.
    """

    def _download(ctx: StepContext) -> None:
        arts = ctx.fetch_matching(job, artifact)
        if not arts:
            raise FileNotFoundError(f"No artifact matching '{artifact}' from job '{job}'")
        target = ctx.run.repo_root / render(dest, ctx.matrix)
        target.mkdir(parents=True, exist_ok=True)
        seen: Dict[str, str] = {}
        for art in arts:
            if art.name in seen:
                raise ValueError(
                    f"Artifact '{art.name}' published by both {seen[art.name]} and {art.producer}"
                )
            seen[art.name] = art.producer.id
            (target / Path(art.name).name).write_bytes(art.data)

    return task(name or f"Download {artifact} from {job}", _download)


def axis(name: str, values: Iterable[Any]) -> MatrixAxis:
    return MatrixAxis(name, tuple(values))


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str]] = None,
    optional_needs: Optional[List[str]] = None,
    matrix: Optional[Dict[str, Iterable[Any]]] = None,
    outputs: Optional[Dict[str, type]] = None,
    inputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    advisory: bool = False,
    fail_fast: bool = False,
    gate: Optional[ReleaseGate] = None,
    cwd: str | None = None,  # default cwd for shell steps
) -> Job:
    if steps_list is None:
        steps_list = []
    steps_final = list(steps_list) + list(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None or not s.is_shell else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        needs=needs or [],
        optional_needs=optional_needs or [],
        axes=[axis(k, v) for k, v in (matrix or {}).items()],
        outputs=outputs or {},
        inputs=inputs or {},
        env=env or {},
        advisory=advisory,
        fail_fast=fail_fast,
        gate=gate,
    )


def release_gate(
    *,
    event: str = "push",
    branch: str | None = None,
    paths: Optional[List[str]] = None,
    **kwargs: Any,
) -> ReleaseGate:
    """The usual release gate: push to the default branch touching release sources."""
    return ReleaseGate(
        event=event,
        branch=branch or settings.DEFAULT_BRANCH,
        paths=paths or ["**"],
        **kwargs,
    )


def wf(*jobs: Job) -> List[Job]:
    """Workflow helper: def workflow(): return wf(job(...), job(...))"""
    return list(jobs)
