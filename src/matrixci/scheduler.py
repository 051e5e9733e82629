# scheduler.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from . import settings
from .artifacts import ArtifactStore
from .context import RunContext
from .dag import build_dag, parse_ref, topo_levels, upstream_closure, validate_contracts
from .errors import ContractError, CycleError, StepFailure
from .gate import GateDecision
from .matrix import expand
from .model import InstanceResult, Job, JobInstance, JobResult, Status
from .runner import run_instance
from .ui.console import get_console

# Upstream states that keep a dependent from running.
_BLOCKING = (Status.FAILURE, Status.CANCELLED, Status.SKIPPED_DEPENDENCY)


@dataclass
class RunResult:
    """Everything a run produced: per-job/instance status, outputs, gate decisions, artifacts."""
    jobs: Dict[str, JobResult]
    decisions: Dict[str, GateDecision] = field(default_factory=dict)
    store: ArtifactStore = field(default_factory=ArtifactStore)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        """Every job that is neither advisory nor gate-skipped succeeded."""
        return all(j.status is Status.SUCCESS for j in self.jobs.values() if j.required)

    @property
    def status(self) -> Status:
        return Status.SUCCESS if self.success else Status.FAILURE

    def status_of(self, job: str) -> Status:
        return self.jobs[job].status

    @property
    def statuses(self) -> Dict[str, Status]:
        return {name: j.status for name, j in self.jobs.items()}

    @property
    def outputs(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(j.outputs) for name, j in self.jobs.items()}

    @property
    def instances(self) -> List[InstanceResult]:
        return [inst for j in self.jobs.values() for inst in j.instances]

    @property
    def release_decision(self) -> Optional[GateDecision]:
        """The gate decision, when the pipeline has exactly one gated job."""
        if len(self.decisions) != 1:
            return None
        return next(iter(self.decisions.values()))


@dataclass
class _JobRun:
    job: Job
    instances: List[JobInstance]
    stop: threading.Event
    results: Dict[int, InstanceResult] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return len(self.results) == len(self.instances)


class Pipeline:
    """
    Job graph scheduler.

    - submit(job) registers jobs (cycles among known jobs fail right away).
    - run() validates the whole graph, evaluates gates, then runs jobs on a
      bounded worker pool as soon as their upstream jobs are terminal.
    - A job whose required upstream failed is skipped-due-to-dependency,
      transitively. Matrix siblings keep running unless the job is fail_fast.
    """

    def __init__(
        self,
        jobs: Iterable[Job] = (),
        context: RunContext | None = None,
        *,
        max_workers: int | None = None,
        store: ArtifactStore | None = None,
    ):
        self.context = context or RunContext()
        self.max_workers = max_workers or settings.MAX_WORKERS
        self.store = store or ArtifactStore()
        self._jobs: Dict[str, Job] = {}
        for j in jobs:
            self.submit(j)

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def submit(self, job: Job) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Duplicate job name: {job.name}")
        self._jobs[job.name] = job
        try:
            self._check_known_cycles()
        except CycleError:
            del self._jobs[job.name]
            raise

    def _check_known_cycles(self) -> None:
        # forward references to jobs not submitted yet are fine here
        known = set(self._jobs)
        adj: Dict[str, Set[str]] = {n: set() for n in known}
        indeg: Dict[str, int] = {n: 0 for n in known}
        for j in self._jobs.values():
            for dep in j.upstream:
                if dep in known and j.name not in adj[dep]:
                    adj[dep].add(j.name)
                    indeg[j.name] += 1
        topo_levels(adj, indeg)

    def validate(self) -> List[List[str]]:
        """Full load-time validation. Returns the stages."""
        jobs = self.jobs
        adj, indeg = build_dag(jobs)
        levels = topo_levels(adj, indeg)
        validate_contracts(jobs)
        for j in jobs:
            expand(j)
        return levels

    def order(self) -> List[List[str]]:
        return self.validate()

    def cancel(self) -> None:
        """Stop at the next step boundary; nothing new starts."""
        self.context.cancel_event.set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        console = get_console()
        levels = self.validate()
        jobs = self.jobs
        adj, indeg = build_dag(jobs)
        upstream = upstream_closure(jobs)

        for idx, level in enumerate(levels, start=1):
            console.print_stage(idx, level)

        # decided once per run, before anything executes
        decisions: Dict[str, GateDecision] = {}
        for j in jobs:
            if j.gate is not None:
                decisions[j.name] = j.gate.evaluate(self.context.trigger)
                console.print_gate_decision(j.name, decisions[j.name])

        results: Dict[str, JobResult] = {}
        ready = deque(sorted(n for n, d in indeg.items() if d == 0))
        running: Dict[str, _JobRun] = {}
        in_flight: Dict[Future, Tuple[str, JobInstance]] = {}

        def _unlock(name: str) -> None:
            for nxt in sorted(adj[name]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            try:
                while ready or in_flight:
                    while ready:
                        name = ready.popleft()
                        job = self._jobs[name]

                        verdict = self._resolve(job, results, decisions)
                        if verdict is not None:
                            status, reason = verdict
                            results[name] = JobResult(
                                name=name,
                                status=status,
                                reason=reason,
                                advisory=job.advisory,
                                instances=[InstanceResult(i, status, reason) for i in expand(job)],
                            )
                            console.print_job_skipped(name, reason)
                            _unlock(name)
                            continue

                        inputs = self._resolve_inputs(job, results)
                        if inputs:
                            console.print_debug(f"{name} inputs: {sorted(inputs)}")
                        jr = _JobRun(job=job, instances=expand(job), stop=threading.Event())
                        running[name] = jr
                        console.print_job_start(name, len(jr.instances))
                        for inst in jr.instances:
                            fut = pool.submit(self._run_one, job, inst, inputs, upstream[name], jr.stop)
                            in_flight[fut] = (name, inst)

                    if not in_flight:
                        break

                    # wait for any instance, then loop to schedule newly-ready jobs
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    for fut in done:
                        name, inst = in_flight.pop(fut)
                        jr = running[name]
                        ires = fut.result()
                        jr.results[inst.index] = ires
                        if ires.status is Status.FAILURE and jr.job.fail_fast:
                            jr.stop.set()
                        if jr.done:
                            results[name] = self._finish(jr)
                            del running[name]
                            console.print_job_finished(name, results[name].status.value, results[name].reason)
                            _unlock(name)
            except BaseException:
                # e.g. KeyboardInterrupt: in-flight instances stop at their next step
                self.cancel()
                raise

        ordered = {n: results[n] for level in levels for n in level}
        return RunResult(
            jobs=ordered,
            decisions=decisions,
            store=self.store,
            cancelled=self.context.cancelled,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve(
        self,
        job: Job,
        results: Dict[str, JobResult],
        decisions: Dict[str, GateDecision],
    ) -> Optional[Tuple[Status, str]]:
        """Decide whether a ready job is skipped. None means: run it."""
        if self.context.cancelled:
            return Status.CANCELLED, "run cancelled"

        blocked = [
            d for d in job.needs
            if results[d].status in _BLOCKING
            and not (results[d].status is Status.FAILURE and results[d].advisory)
        ]
        if blocked:
            return Status.SKIPPED_DEPENDENCY, f"upstream did not succeed: {', '.join(blocked)}"

        gated = [d for d in job.needs if results[d].status is Status.SKIPPED_GATE]
        if gated:
            return Status.SKIPPED_GATE, f"upstream gated: {', '.join(gated)}"

        decision = decisions.get(job.name)
        if decision is not None and not decision.eligible:
            return Status.SKIPPED_GATE, decision.reason

        return None

    def _resolve_inputs(self, job: Job, results: Dict[str, JobResult]) -> Dict[str, Any]:
        inputs: Dict[str, Any] = {}
        for local, ref in job.inputs.items():
            src, output = parse_ref(ref)
            outputs = results[src].outputs
            # an optional upstream that did not succeed leaves the input unset
            if output in outputs:
                inputs[local] = outputs[output]
        return inputs

    def _run_one(
        self,
        job: Job,
        inst: JobInstance,
        inputs: Dict[str, Any],
        upstream: Set[str],
        stop: threading.Event,
    ) -> InstanceResult:
        try:
            return run_instance(job, inst, self.context, self.store,
                                inputs=inputs, upstream=upstream, stop=stop)
        except Exception as e:
            # errors outside any step (e.g. a bad env template) still fail only this instance
            failure = StepFailure(job=inst.id, step="<setup>", kind="exception",
                                  message=f"{type(e).__name__}: {e}")
            get_console().print_step_failed(inst.id, failure)
            return InstanceResult(inst, Status.FAILURE, reason=str(failure), error=failure)

    def _finish(self, jr: _JobRun) -> JobResult:
        job = jr.job
        insts = [jr.results[i.index] for i in jr.instances]
        failed = [r for r in insts if r.status is Status.FAILURE]
        cancelled = [r for r in insts if r.status is Status.CANCELLED]

        outputs: Dict[str, Any] = {}
        for r in insts:
            outputs.update(r.outputs)      # instance order: later cells win

        if failed:
            status = Status.FAILURE
            reason = f"{len(failed)} of {len(insts)} instance(s) failed"
        elif cancelled:
            status = Status.CANCELLED
            reason = f"{len(cancelled)} of {len(insts)} instance(s) cancelled"
        else:
            status, reason = Status.SUCCESS, ""
            missing = sorted(set(job.outputs) - set(outputs))
            if missing:
                status = Status.FAILURE
                reason = str(ContractError(f"declared output(s) never set: {missing}"))

        return JobResult(
            name=job.name,
            status=status,
            reason=reason,
            advisory=job.advisory,
            instances=insts,
            outputs=outputs,
        )


def run_pipeline(jobs: Iterable[Job], context: RunContext | None = None, **kwargs: Any) -> RunResult:
    """Build a Pipeline from jobs and run it."""
    return Pipeline(jobs, context, **kwargs).run()
