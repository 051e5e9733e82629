"""Tests for the job scheduler and a full release pipeline."""
import threading
import time

import pytest

from matrixci.context import TriggerInfo
from matrixci.coverage import coverage_job
from matrixci.dsl import job, release_gate, task
from matrixci.errors import CycleError
from matrixci.gate import ReleaseGate, StaticChangeDetector
from matrixci.model import Status
from matrixci.scheduler import Pipeline, run_pipeline
from matrixci.secrets import StaticSecretProvider


def _ok(calls=None, label=None):
    def _step(ctx):
        if calls is not None:
            calls.append(label or ctx.instance.id)
    return task("ok", _step)


def _boom(ctx):
    raise RuntimeError("boom")


class TestPropagation:
    def test_failure_skips_downstream_transitively(self, context):
        calls = []
        jobs = [
            job("a", task("fail", _boom)),
            job("b", _ok(calls, "b"), needs=["a"]),
            job("c", _ok(calls, "c"), needs=["b"]),
            job("d", _ok(calls, "d")),
        ]
        result = run_pipeline(jobs, context)

        assert calls == ["d"]
        assert result.statuses == {
            "a": Status.FAILURE,
            "d": Status.SUCCESS,
            "b": Status.SKIPPED_DEPENDENCY,
            "c": Status.SKIPPED_DEPENDENCY,
        }
        assert "a" in result.jobs["b"].reason
        assert result.status is Status.FAILURE

    def test_advisory_failure_does_not_block(self, context):
        calls = []
        jobs = [
            job("lint", task("fail", _boom), advisory=True),
            job("build", _ok(calls, "build"), needs=["lint"]),
        ]
        result = run_pipeline(jobs, context)
        assert calls == ["build"]
        assert result.status_of("lint") is Status.FAILURE
        assert result.success

    def test_optional_needs_never_block(self, context):
        calls = []
        jobs = [
            job("docs", task("fail", _boom)),
            job("report", _ok(calls, "report"), optional_needs=["docs"]),
        ]
        result = run_pipeline(jobs, context)
        assert calls == ["report"]
        assert result.status_of("report") is Status.SUCCESS
        # docs is still required, so the run fails
        assert not result.success

    def test_missing_declared_output_fails_job(self, context):
        result = run_pipeline([job("build", _ok(), outputs={"version": str})], context)
        assert result.status_of("build") is Status.FAILURE
        assert "never set" in result.jobs["build"].reason


class TestConcurrency:
    def test_independent_jobs_overlap(self, context):
        barrier = threading.Barrier(2, timeout=5)

        def _meet(ctx):
            barrier.wait()

        jobs = [job("a", task("meet", _meet)), job("b", task("meet", _meet))]
        result = run_pipeline(jobs, context, max_workers=2)
        assert result.success

    def test_matrix_cells_overlap(self, context):
        barrier = threading.Barrier(3, timeout=5)
        j = job("validate", task("meet", lambda ctx: barrier.wait()), matrix={"n": [1, 2, 3]})
        result = run_pipeline([j], context, max_workers=3)
        assert result.success
        assert len(result.jobs["validate"].instances) == 3

    def test_dependent_waits_for_all_cells(self, context):
        finished = []

        def _cell(ctx):
            time.sleep(0.05 * ctx.matrix["n"])
            finished.append(ctx.matrix["n"])

        def _after(ctx):
            assert sorted(finished) == [1, 2, 3]

        jobs = [
            job("validate", task("t", _cell), matrix={"n": [1, 2, 3]}),
            job("merge", task("m", _after), needs=["validate"]),
        ]
        assert run_pipeline(jobs, context, max_workers=4).success


class TestMatrixFailures:
    def _jobs(self, fail_fast, calls):
        def _cell(ctx):
            if ctx.matrix["n"] == 0:
                raise RuntimeError("cell 0 failed")
            time.sleep(0.3)

        return [job(
            "validate",
            task("first", _cell),
            task("second", lambda ctx: calls.append(ctx.matrix["n"])),
            matrix={"n": [0, 1]},
            fail_fast=fail_fast,
        )]

    def test_siblings_keep_running_by_default(self, context):
        calls = []
        result = run_pipeline(self._jobs(False, calls), context, max_workers=2)
        statuses = [i.status for i in result.jobs["validate"].instances]
        assert statuses == [Status.FAILURE, Status.SUCCESS]
        assert calls == [1]
        assert result.status_of("validate") is Status.FAILURE

    def test_fail_fast_cancels_siblings(self, context):
        calls = []
        result = run_pipeline(self._jobs(True, calls), context, max_workers=2)
        statuses = [i.status for i in result.jobs["validate"].instances]
        assert statuses == [Status.FAILURE, Status.CANCELLED]
        assert calls == []
        assert result.status_of("validate") is Status.FAILURE


class TestGates:
    def test_closed_gate_is_not_a_failure(self, context):
        calls = []
        jobs = [
            job("build", _ok()),
            job("release", _ok(calls), needs=["build"], gate=ReleaseGate(branch="release")),
            job("announce", _ok(calls), needs=["release"]),
        ]
        result = run_pipeline(jobs, context)
        assert calls == []
        assert result.status_of("release") is Status.SKIPPED_GATE
        assert result.status_of("announce") is Status.SKIPPED_GATE
        assert result.success
        assert not result.release_decision.eligible

    def test_gate_decided_before_anything_runs(self, context):
        order = []

        class Recording(StaticChangeDetector):
            def changed_files(self, trigger):
                order.append("gate")
                return super().changed_files(trigger)

        jobs = [
            job("build", _ok(order, "build")),
            job("release", _ok(order, "release"), needs=["build"],
                gate=release_gate(paths=["src/**"], detector=Recording(["src/a.py"]))),
        ]
        result = run_pipeline(jobs, context)
        assert order == ["gate", "build", "release"]
        assert result.release_decision.eligible

    def test_failed_upstream_wins_over_gate(self, context):
        jobs = [
            job("build", task("fail", _boom)),
            job("release", _ok(), needs=["build"], gate=ReleaseGate(branch="release")),
        ]
        result = run_pipeline(jobs, context)
        assert result.status_of("release") is Status.SKIPPED_DEPENDENCY


class TestInputsAndValidation:
    def test_outputs_flow_to_inputs(self, context):
        seen = {}
        jobs = [
            job("build", task("v", lambda ctx: ctx.set_output("version", "1.4.0")), outputs={"version": str}),
            job("release", task("r", lambda ctx: seen.update(ctx.inputs)), needs=["build"],
                inputs={"VERSION": "build.version"}),
        ]
        result = run_pipeline(jobs, context)
        assert result.success
        assert seen == {"VERSION": "1.4.0"}
        assert result.outputs["build"] == {"version": "1.4.0"}

    def test_cycle_rejected_before_running(self, context):
        calls = []
        with pytest.raises(CycleError):
            Pipeline([
                job("a", _ok(calls), needs=["c"]),
                job("b", _ok(calls), needs=["a"]),
                job("c", _ok(calls), needs=["b"]),
            ], context)
        assert calls == []

    def test_submit_allows_forward_references(self, context):
        pipeline = Pipeline(context=context)
        pipeline.submit(job("b", _ok(), needs=["a"]))
        pipeline.submit(job("a", _ok()))
        assert pipeline.order() == [["a"], ["b"]]
        with pytest.raises(CycleError):
            pipeline.submit(job("c", _ok(), needs=["b"], optional_needs=["c"]))
        assert [j.name for j in pipeline.jobs] == ["b", "a"]

    def test_unknown_need_fails_validation(self, context):
        pipeline = Pipeline([job("b", _ok(), needs=["ghost"])], context)
        with pytest.raises(ValueError):
            pipeline.run()

    def test_upstream_artifacts_only(self, context):
        errors = []

        def _peek(ctx):
            try:
                ctx.fetch("other", "x")
            except Exception as e:
                errors.append(type(e).__name__)

        jobs = [
            job("other", task("p", lambda ctx: ctx.publish("x", b"1"))),
            job("reader", task("peek", _peek), needs=[]),
        ]
        run_pipeline(jobs, context)
        assert errors == ["ArtifactAccessError"]


class TestCancellation:
    def test_cancel_skips_remaining_jobs(self, context):
        calls = []

        def _stop(ctx):
            ctx.run.cancel_event.set()

        jobs = [
            job("a", task("stop", _stop)),
            job("b", _ok(calls), needs=["a"]),
        ]
        result = run_pipeline(jobs, context)
        assert calls == []
        assert result.cancelled
        assert result.status_of("b") is Status.CANCELLED
        assert not result.success


# ----------------------------------------------------------------------
# Full release pipeline
# ----------------------------------------------------------------------

OS = ["A", "B"]
PY = ["1", "2"]


def _release_pipeline(make_coverage, fail_cell=None):
    def _validate(ctx):
        cell = (ctx.matrix["os"], ctx.matrix["py"])
        if cell == fail_cell:
            raise RuntimeError(f"tests failed on {cell}")
        line = OS.index(cell[0]) * 2 + PY.index(cell[1]) + 1
        ctx.publish("cov", make_coverage({"pkg/mod.py": ([line], [l for l in range(1, 6) if l != line])}))

    def _build(ctx):
        ctx.publish("pkg-1.0.whl", b"wheel")
        ctx.set_output("version", "1.0")

    def _validate_package(ctx):
        assert ctx.fetch("build", "pkg-1.0.whl").data == b"wheel"

    def _sign(ctx):
        ctx.publish("pkg-1.0.whl.sig", "signed with " + ctx.secret("SIGNING_KEY"))

    def _publish(ctx):
        assert ctx.inputs["VERSION"] == "1.0"
        ctx.publish("published", ctx.fetch("build", "pkg-1.0.whl").data)

    return [
        job("validate", task("test", _validate), matrix={"os": OS, "py": PY}),
        coverage_job("package_coverage", "validate"),
        job("build", task("build", _build), needs=["package_coverage"], outputs={"version": str}),
        job("validate_package", task("check", _validate_package), needs=["build"], matrix={"os": OS}),
        job(
            "release",
            task("sign", _sign, requires_secret="SIGNING_KEY"),
            task("publish", _publish),
            needs=["build", "validate_package"],
            inputs={"VERSION": "build.version"},
            gate=release_gate(paths=["src/**"], detector=StaticChangeDetector(["src/pkg/mod.py"])),
        ),
    ]


class TestReleasePipeline:
    def test_everything_succeeds(self, context, make_coverage):
        context.secrets = StaticSecretProvider({"SIGNING_KEY": "k"})
        result = run_pipeline(_release_pipeline(make_coverage), context)

        assert result.success
        assert all(s is Status.SUCCESS for s in result.statuses.values())
        assert list(result.jobs) == ["validate", "package_coverage", "build", "validate_package", "release"]
        # each cell covers one distinct line of five
        assert result.outputs["package_coverage"] == {"coverage_total": "80"}
        assert result.store.fetch("release", "pkg-1.0.whl.sig").text() == "signed with k"
        assert len(result.jobs["validate"].instances) == 4

    def test_one_failed_cell(self, context, make_coverage):
        result = run_pipeline(_release_pipeline(make_coverage, fail_cell=("B", "2")), context)

        cells = {i.instance.id: i.status for i in result.jobs["validate"].instances}
        assert list(cells.values()).count(Status.SUCCESS) == 3
        assert cells["validate (os=B, py=2)"] is Status.FAILURE
        for name in ["package_coverage", "build", "validate_package", "release"]:
            assert result.status_of(name) is Status.SKIPPED_DEPENDENCY
        assert len(result.store.fetch_all("validate", "cov")) == 3
        assert not result.success

    def test_signing_without_key_is_a_noop(self, context, make_coverage):
        result = run_pipeline(_release_pipeline(make_coverage), context)

        assert result.status_of("release") is Status.SUCCESS
        steps = result.jobs["release"].instances[0].steps
        assert [(s.name, s.status) for s in steps] == [("sign", "skipped"), ("publish", "success")]
        assert ("release", "pkg-1.0.whl.sig") not in result.store.names("release")
        assert result.store.fetch("release", "published").data == b"wheel"

    def test_pull_request_skips_release(self, context, make_coverage):
        context.trigger = TriggerInfo(event="pull_request", ref="refs/heads/main")
        result = run_pipeline(_release_pipeline(make_coverage), context)
        assert result.status_of("release") is Status.SKIPPED_GATE
        assert result.status_of("validate_package") is Status.SUCCESS
        assert result.success
