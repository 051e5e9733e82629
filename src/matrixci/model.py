# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union


class Status(str, Enum):
    """Terminal state of a job or a job instance."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED_DEPENDENCY = "skipped-due-to-dependency"
    SKIPPED_GATE = "skipped-due-to-gate"
    CANCELLED = "cancelled"

    @property
    def skipped(self) -> bool:
        return self in (Status.SKIPPED_DEPENDENCY, Status.SKIPPED_GATE)


# A step action is either a shell command or a python callable taking a StepContext.
Action = Union[str, Callable[..., Any]]


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job."""
    name: str
    run: Action
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout: float | None = None                 # seconds; exceeding it fails the step
    requires_secret: str | None = None           # absent secret -> step is a silent no-op
    continue_on_error: bool = False
    publishes: Dict[str, str] = field(default_factory=dict)   # artifact name -> file path (shell steps)

    @property
    def is_shell(self) -> bool:
        return isinstance(self.run, str)


@dataclass(frozen=True)
class MatrixAxis:
    """One dimension of a job matrix: a name and its ordered values."""
    name: str
    values: Tuple[Any, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Matrix axis needs a name")
        # accept any iterable, store a tuple
        object.__setattr__(self, "values", tuple(self.values))
        if not self.values:
            raise ValueError(f"Matrix axis '{self.name}' must have at least one value")


@dataclass
class Job:
    """
    A pipeline job: steps + dependencies + matrix + contracts.

    needs           required upstream jobs; a failed one skips this job
    optional_needs  ordering only; their failure never blocks this job
    outputs         declared output names and their types
    inputs          local name -> "job.output" reference to an upstream output
    advisory        failure neither blocks dependents nor fails the run
    fail_fast       matrix strategy; one failed instance cancels its siblings
    gate            optional release gate deciding whether the job runs at all
    """
    name: str
    steps: list[Step]

    needs: list[str] = field(default_factory=list)
    optional_needs: list[str] = field(default_factory=list)
    axes: list[MatrixAxis] = field(default_factory=list)

    outputs: Dict[str, type] = field(default_factory=dict)
    inputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    advisory: bool = False
    fail_fast: bool = False
    gate: Optional[Any] = None

    @property
    def upstream(self) -> list[str]:
        """Every job this one waits for."""
        return list(dict.fromkeys([*self.needs, *self.optional_needs]))


@dataclass(frozen=True)
class JobInstance:
    """One concrete execution of a job for one matrix cell."""
    job: str
    index: int
    values: Tuple[Tuple[str, Any], ...] = ()

    @property
    def matrix(self) -> Dict[str, Any]:
        return dict(self.values)

    @property
    def id(self) -> str:
        if not self.values:
            return self.job
        cell = ", ".join(f"{k}={v}" for k, v in self.values)
        return f"{self.job} ({cell})"

    def __str__(self) -> str:
        return self.id


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str                     # "success" | "failure" | "skipped"
    reason: str = ""
    duration: float = 0.0


@dataclass
class InstanceResult:
    instance: JobInstance
    status: Status
    reason: str = ""
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Exception] = None
    summary: List[str] = field(default_factory=list)


@dataclass
class JobResult:
    name: str
    status: Status
    reason: str = ""
    advisory: bool = False
    instances: List[InstanceResult] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def required(self) -> bool:
        """Counts towards the overall run status."""
        return not self.advisory and self.status is not Status.SKIPPED_GATE
