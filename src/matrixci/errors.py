# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class MatrixCIError(Exception):
    """Base class for every error raised by matrixci."""


@dataclass
class CycleError(MatrixCIError):
    """The job graph has a cycle. Raised before anything runs."""
    jobs: List[str]

    def __str__(self) -> str:
        return f"Job graph has a cycle. Stuck jobs: {self.jobs}"


class ContractError(MatrixCIError):
    """A job input/output contract is broken (load time or when an output is set)."""


@dataclass
class StepFailure(MatrixCIError):
    """
    A step failed inside one job instance.

    kind is one of: "exit", "timeout", "exception", "missing-artifact", "cancelled".
    """
    job: str
    step: str
    kind: str
    message: str
    exit_code: int | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] step '{self.step}' failed ({self.kind}): {self.message}"]
        if self.exit_code is not None:
            lines.append(f"exit_code={self.exit_code}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class NoCoverageDataError(MatrixCIError):
    """Coverage aggregation was asked to merge zero reports."""


class ArtifactNotFoundError(MatrixCIError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "artifact not found"


class ArtifactConflictError(MatrixCIError):
    """Same instance tried to publish the same artifact name twice."""


class ArtifactAccessError(MatrixCIError):
    """A job read artifacts of a job that is not upstream of it."""


class ContextClosedError(MatrixCIError):
    """A step wrote through its context after the runner stopped waiting for it."""


@dataclass
class GitError(MatrixCIError):
    """A git command needed by the run failed (bad ref, shallow clone, no repository)."""
    command: List[str]
    stderr: str = ""

    def __str__(self) -> str:
        tail = f": {self.stderr.strip()}" if self.stderr.strip() else ""
        return f"git command failed ({' '.join(self.command)}){tail}"
