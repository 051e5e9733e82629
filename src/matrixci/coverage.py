"""
Coverage aggregation across matrix cells.

Each cell of a test job publishes a raw coverage report (coverage.py JSON:
``files.<path>.executed_lines`` / ``missing_lines``, plus
``executed_branches`` / ``missing_branches`` when branch coverage is on). The
aggregator job fetches all of them at once, merges them by set union,
republishes the merged report and exposes the total percentage as a job
output.

Union per file is associative and commutative, so the merged result does not
depend on which cell finished first.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import reduce
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from .context import StepContext
from .errors import NoCoverageDataError
from .model import Job, Step

Arc = Tuple[int, int]


def format_percent(pc: float, precision: int = 0) -> str:
    """
    Render a percentage the way coverage.py does: never "100" unless
    everything is covered, never "0" unless nothing is.
    """
    near0 = 1.0 / 10 ** precision
    if 0 < pc < near0:
        pc = near0
    elif 100.0 - near0 < pc < 100.0:
        pc = 100.0 - near0
    else:
        pc = round(pc, precision)
    return f"{pc:.{precision}f}"


@dataclass(frozen=True)
class FileCoverage:
    statements: FrozenSet[int]
    executed: FrozenSet[int]
    branches: FrozenSet[Arc] = frozenset()
    executed_branches: FrozenSet[Arc] = frozenset()

    @property
    def missing(self) -> FrozenSet[int]:
        return self.statements - self.executed

    @property
    def missing_branches(self) -> FrozenSet[Arc]:
        return self.branches - self.executed_branches

    def combine(self, other: "FileCoverage") -> "FileCoverage":
        return FileCoverage(
            self.statements | other.statements,
            self.executed | other.executed,
            self.branches | other.branches,
            self.executed_branches | other.executed_branches,
        )


def _arcs(entries: Iterable[Iterable[int]]) -> FrozenSet[Arc]:
    return frozenset((int(a), int(b)) for a, b in entries)


@dataclass(frozen=True)
class CoverageReport:
    files: Dict[str, FileCoverage] = field(default_factory=dict)
    # totals as written by coverage.py; kept only for a report read as-is
    totals: Optional[Mapping[str, Any]] = field(default=None, compare=False)

    @property
    def num_statements(self) -> int:
        return sum(len(f.statements) for f in self.files.values())

    @property
    def covered_lines(self) -> int:
        return sum(len(f.executed & f.statements) for f in self.files.values())

    @property
    def num_branches(self) -> int:
        return sum(len(f.branches) for f in self.files.values())

    @property
    def covered_branches(self) -> int:
        return sum(len(f.executed_branches & f.branches) for f in self.files.values())

    @property
    def percent_covered(self) -> float:
        if self.totals and "percent_covered" in self.totals:
            return float(self.totals["percent_covered"])
        total = self.num_statements + self.num_branches
        # nothing to measure counts as fully covered
        if total == 0:
            return 100.0
        return 100.0 * (self.covered_lines + self.covered_branches) / total

    def display(self, precision: int = 0) -> str:
        return format_percent(self.percent_covered, precision)

    def combine(self, other: "CoverageReport") -> "CoverageReport":
        files = dict(self.files)
        for path, cov in other.files.items():
            files[path] = files[path].combine(cov) if path in files else cov
        return CoverageReport(files)

    @classmethod
    def from_json(cls, data: bytes | str) -> "CoverageReport":
        doc = json.loads(data)
        files: Dict[str, FileCoverage] = {}
        for path, entry in (doc.get("files") or {}).items():
            executed = frozenset(entry.get("executed_lines", []))
            missing = frozenset(entry.get("missing_lines", []))
            hit = _arcs(entry.get("executed_branches", []))
            missed = _arcs(entry.get("missing_branches", []))
            files[path] = FileCoverage(
                statements=executed | missing,
                executed=executed,
                branches=hit | missed,
                executed_branches=hit,
            )
        return cls(files, totals=doc.get("totals"))

    def to_json(self, precision: int = 0) -> str:
        files = {}
        for path in sorted(self.files):
            f = self.files[path]
            entry: Dict[str, Any] = {
                "executed_lines": sorted(f.executed),
                "missing_lines": sorted(f.missing),
                "summary": {
                    "covered_lines": len(f.executed & f.statements),
                    "num_statements": len(f.statements),
                },
            }
            if f.branches:
                entry["executed_branches"] = [list(a) for a in sorted(f.executed_branches)]
                entry["missing_branches"] = [list(a) for a in sorted(f.missing_branches)]
                entry["summary"]["covered_branches"] = len(f.executed_branches & f.branches)
                entry["summary"]["num_branches"] = len(f.branches)
            files[path] = entry
        totals: Dict[str, Any] = {
            "covered_lines": self.covered_lines,
            "num_statements": self.num_statements,
            "covered_branches": self.covered_branches,
            "num_branches": self.num_branches,
            "percent_covered": self.percent_covered,
            "percent_covered_display": self.display(precision),
        }
        if self.totals:
            totals = {**totals, **self.totals}
        doc = {"files": files, "totals": totals}
        return json.dumps(doc, sort_keys=True, indent=2)


def merge(reports: Sequence[CoverageReport]) -> CoverageReport:
    """Merge reports; zero is an error, one comes back unchanged."""
    reports = list(reports)
    if not reports:
        raise NoCoverageDataError("No coverage data to combine")
    if len(reports) == 1:
        return reports[0]
    return reduce(lambda a, b: a.combine(b), reports)


def coverage_job(
    name: str,
    source: str,
    *,
    artifact: str = "cov",
    merged_artifact: str = "coverage.json",
    output: str = "coverage_total",
    fail_under: Optional[float] = None,
    precision: int = 0,
    parse: Callable[[bytes], CoverageReport] = CoverageReport.from_json,
    combine: Callable[[Sequence[CoverageReport]], CoverageReport] = merge,
    needs: Iterable[str] = (),
    advisory: bool = False,
) -> Job:
    """
    Builtin post-processing job: merge every `artifact` (glob) published by
    `source`'s instances and expose the total as output `output`.
    """

    def _combine(ctx: StepContext) -> None:
        arts = ctx.fetch_matching(source, artifact)
        report = combine([parse(a.data) for a in arts])
        total = report.display(precision)

        ctx.publish(merged_artifact, report.to_json(precision))
        ctx.set_output(output, total)
        ctx.summary(f"**Total coverage:** {total}%")

        if fail_under is not None and report.percent_covered < fail_under:
            raise ValueError(f"Total coverage {total}% is below fail_under={fail_under}%")

    return Job(
        name=name,
        steps=[Step(name="Combine coverage data", run=_combine)],
        needs=list(dict.fromkeys([source, *needs])),
        outputs={output: str},
        advisory=advisory,
    )
