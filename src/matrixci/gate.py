"""
Release gate: decides whether a gated job runs at all.

Conditions are plain predicate objects evaluated in code, each testable on
its own. A gate is eligible only when every condition holds; otherwise the
gated job ends as skipped-due-to-gate, which is not a failure.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from .context import TriggerInfo
from .errors import GitError
from .git_facts import git


# ----------------------------------------------------------------------
# Change detection
# ----------------------------------------------------------------------

class ChangeDetector(Protocol):
    def changed_files(self, trigger: TriggerInfo) -> List[str]:
        ...


class StaticChangeDetector:
    """A fixed list of changed paths (tests, or a diff computed elsewhere)."""

    def __init__(self, paths: Iterable[str]):
        self.paths = sorted(set(paths))

    def changed_files(self, trigger: TriggerInfo) -> List[str]:
        return list(self.paths)


class GitChangeDetector:
    """Diff of the trigger's base..head range, from the local git checkout."""

    def __init__(self, repo: str | Path | None = None):
        self.repo = repo

    def changed_files(self, trigger: TriggerInfo) -> List[str]:
        if trigger.changed_files is not None:
            return list(trigger.changed_files)
        try:
            return git.changed_files(trigger.base, trigger.head, cwd=self.repo)
        except subprocess.CalledProcessError as e:
            raise GitError(command=list(e.cmd), stderr=e.stderr or "") from e
        except FileNotFoundError as e:
            raise GitError(command=["git", "diff"], stderr="git executable not found") from e


def match_filters(paths: Iterable[str], filters: Sequence[str]) -> List[str]:
    """
    Paths selected by a filter list.

    Filters apply in order; "pattern" adds matches, "!pattern" removes them
    again. A list of only negations starts from every path.
    """
    paths = list(paths)
    if filters and all(f.startswith("!") for f in filters):
        selected = set(paths)
    else:
        selected = set()
    for pattern in filters:
        if pattern.startswith("!"):
            selected -= {p for p in selected if fnmatch(p, pattern[1:])}
        else:
            selected |= {p for p in paths if fnmatch(p, pattern)}
    return sorted(selected)


# ----------------------------------------------------------------------
# Predicates
# ----------------------------------------------------------------------

class Predicate:
    description = "predicate"

    def evaluate(self, trigger: TriggerInfo) -> bool:
        raise NotImplementedError

    def __and__(self, other: "Predicate") -> "AllOf":
        return AllOf([self, other])

    def __str__(self) -> str:
        return self.description


class EventIs(Predicate):
    def __init__(self, event: str):
        self.event = event
        self.description = f"event == {event!r}"

    def evaluate(self, trigger: TriggerInfo) -> bool:
        return trigger.event == self.event


class BranchIs(Predicate):
    def __init__(self, branch: str):
        prefix = "refs/heads/"
        self.branch = branch[len(prefix):] if branch.startswith(prefix) else branch
        self.description = f"branch == {self.branch!r}"

    def evaluate(self, trigger: TriggerInfo) -> bool:
        return trigger.branch == self.branch


class PathsChanged(Predicate):
    def __init__(self, filters: Sequence[str], detector: Optional[ChangeDetector] = None):
        if not filters:
            raise ValueError("PathsChanged needs at least one path filter")
        self.filters = list(filters)
        self.detector = detector or GitChangeDetector()
        self.description = f"paths changed {self.filters}"

    def evaluate(self, trigger: TriggerInfo) -> bool:
        return bool(match_filters(self.detector.changed_files(trigger), self.filters))


class AllOf(Predicate):
    def __init__(self, predicates: Sequence[Predicate]):
        flat: List[Predicate] = []
        for p in predicates:
            flat.extend(p.predicates if isinstance(p, AllOf) else [p])
        self.predicates = flat
        self.description = " and ".join(str(p) for p in flat)

    def evaluate(self, trigger: TriggerInfo) -> bool:
        return all(p.evaluate(trigger) for p in self.predicates)


# ----------------------------------------------------------------------
# Gate
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class GateDecision:
    eligible: bool
    checks: Tuple[Tuple[str, bool], ...] = field(default_factory=tuple)

    @property
    def failed_checks(self) -> List[str]:
        return [name for name, ok in self.checks if not ok]

    @property
    def reason(self) -> str:
        if self.eligible:
            return "all gate conditions hold"
        return "gate closed: " + ", ".join(self.failed_checks)


class ReleaseGate:
    """
    Gate built from conditions that must all hold.

    The usual shape is ReleaseGate(event="push", branch="main", paths=["src/**"]),
    which adds the three standard predicates. Extra predicates can be passed
    through `conditions`.
    """

    def __init__(
        self,
        *,
        event: str | None = None,
        branch: str | None = None,
        paths: Sequence[str] | None = None,
        detector: ChangeDetector | None = None,
        conditions: Sequence[Predicate] = (),
    ):
        preds: List[Predicate] = []
        if event is not None:
            preds.append(EventIs(event))
        if branch is not None:
            preds.append(BranchIs(branch))
        if paths is not None:
            preds.append(PathsChanged(paths, detector))
        preds.extend(conditions)
        if not preds:
            raise ValueError("ReleaseGate needs at least one condition")
        self.conditions = preds

    def evaluate(self, trigger: TriggerInfo) -> GateDecision:
        # every condition is evaluated so the decision can report all of them
        checks = tuple((str(p), bool(p.evaluate(trigger))) for p in self.conditions)
        return GateDecision(eligible=all(ok for _, ok in checks), checks=checks)

    def __repr__(self) -> str:
        return f"ReleaseGate({' and '.join(str(p) for p in self.conditions)})"
