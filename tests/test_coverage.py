"""Tests for coverage merging and the aggregator job."""
import json

import pytest

from matrixci.coverage import CoverageReport, coverage_job, format_percent, merge
from matrixci.dsl import job, task
from matrixci.errors import NoCoverageDataError, StepFailure
from matrixci.model import Status
from matrixci.scheduler import run_pipeline


def _report(make_coverage, files):
    return CoverageReport.from_json(make_coverage(files))


class TestMerge:
    def test_union_is_order_independent(self, make_coverage):
        a = _report(make_coverage, {"pkg/a.py": ([1, 2], [3, 4])})
        b = _report(make_coverage, {"pkg/a.py": ([3], [1, 2, 4]), "pkg/b.py": ([1], [2])})
        c = _report(make_coverage, {"pkg/b.py": ([2], [1])})

        first = merge([a, b, c])
        second = merge([c, a, b])
        assert first == second
        assert first.to_json() == second.to_json()
        assert first.num_statements == 6
        assert first.covered_lines == 5

    def test_percent(self, make_coverage):
        report = _report(make_coverage, {"a.py": ([1, 2, 3], [4])})
        assert report.percent_covered == 75.0
        assert report.display() == "75"
        assert report.display(1) == "75.0"

    def test_single_report_unchanged(self, make_coverage):
        only = _report(make_coverage, {"a.py": ([1], [2])})
        assert merge([only]) is only

    def test_zero_reports(self):
        with pytest.raises(NoCoverageDataError):
            merge([])

    def test_no_statements_is_fully_covered(self):
        assert CoverageReport().percent_covered == 100.0

    def test_totals_in_json(self, make_coverage):
        report = _report(make_coverage, {"a.py": ([1], [2])})
        totals = json.loads(report.to_json())["totals"]
        assert totals["num_statements"] == 2
        assert totals["percent_covered_display"] == "50"


def _producer(make_coverage, cells):
    def _write(ctx):
        executed, missing = cells[ctx.matrix["os"]]
        ctx.publish(f".coverage.{ctx.matrix['os']}.json", make_coverage({"pkg/a.py": (executed, missing)}))

    return job("validate", task("test", _write), matrix={"os": sorted(cells)})


class TestCoverageJob:
    def test_total_output_and_summary(self, context, make_coverage):
        cells = {"A": ([1, 2], [3, 4]), "B": ([3], [1, 2, 4])}
        jobs = [_producer(make_coverage, cells), coverage_job("coverage", "validate", artifact=".coverage.*.json")]
        result = run_pipeline(jobs, context)

        assert result.success
        assert result.outputs["coverage"] == {"coverage_total": "75"}
        merged = CoverageReport.from_json(result.store.fetch("coverage", "coverage.json").data)
        assert merged.covered_lines == 3
        summary = result.jobs["coverage"].instances[0].summary
        assert summary == ["**Total coverage:** 75%"]

    def test_no_data_fails_the_job(self, context):
        jobs = [
            job("validate", task("test", lambda ctx: None)),
            coverage_job("coverage", "validate"),
        ]
        result = run_pipeline(jobs, context)

        cov = result.jobs["coverage"]
        assert cov.status is Status.FAILURE
        error = cov.instances[0].error
        assert isinstance(error, StepFailure)
        assert isinstance(error.__cause__, NoCoverageDataError)
        assert not result.success

    def test_fail_under(self, context, make_coverage):
        cells = {"A": ([1], [2, 3, 4])}
        jobs = [_producer(make_coverage, cells),
                coverage_job("coverage", "validate", artifact=".coverage.*", fail_under=80)]
        result = run_pipeline(jobs, context)
        assert result.status_of("coverage") is Status.FAILURE
        assert "below fail_under" in result.jobs["coverage"].instances[0].error.message
        # the merged report is still published before the threshold check
        assert result.store.fetch("coverage", "coverage.json")


def _branch_report(totals=None):
    doc = {
        "files": {
            "pkg/a.py": {
                "executed_lines": [1, 2, 3, 4],
                "missing_lines": [],
                "executed_branches": [[2, 3]],
                "missing_branches": [[2, 4], [3, 1], [3, 4]],
            }
        }
    }
    if totals is not None:
        doc["totals"] = totals
    return json.dumps(doc)


class TestBranchCoverage:
    def test_branches_count_towards_total(self):
        report = CoverageReport.from_json(_branch_report())
        assert report.num_branches == 4
        assert report.covered_branches == 1
        # (4 lines + 1 branch) / (4 statements + 4 branches)
        assert report.percent_covered == 62.5

    def test_single_report_keeps_its_own_totals(self):
        totals = {"percent_covered": 50.0, "percent_covered_display": "50", "num_statements": 4}
        merged = merge([CoverageReport.from_json(_branch_report(totals))])
        assert merged.display() == "50"
        assert json.loads(merged.to_json())["totals"]["percent_covered_display"] == "50"

    def test_branches_union_across_cells(self):
        other = json.dumps({
            "files": {
                "pkg/a.py": {
                    "executed_lines": [1, 2, 3, 4],
                    "missing_lines": [],
                    "executed_branches": [[2, 4], [3, 1]],
                    "missing_branches": [[2, 3], [3, 4]],
                }
            }
        })
        merged = merge([CoverageReport.from_json(_branch_report()), CoverageReport.from_json(other)])
        assert merged.covered_branches == 3
        assert merged.num_branches == 4
        assert merged.display(1) == "87.5"
        doc = json.loads(merged.to_json())
        assert doc["files"]["pkg/a.py"]["missing_branches"] == [[3, 4]]


class TestDisplay:
    @pytest.mark.parametrize(
        "percent,precision,expected",
        [
            (99.6, 0, "99"),
            (99.96, 1, "99.9"),
            (0.2, 0, "1"),
            (100.0, 0, "100"),
            (0.0, 0, "0"),
            (75.4, 0, "75"),
            (75.6, 0, "76"),
        ],
    )
    def test_never_rounds_to_the_extremes(self, percent, precision, expected):
        assert format_percent(percent, precision) == expected

    def test_nearly_complete_report(self, make_coverage):
        executed = list(range(1, 250))
        report = _report(make_coverage, {"a.py": (executed, [250])})
        assert report.percent_covered == pytest.approx(99.6)
        assert report.display() == "99"
