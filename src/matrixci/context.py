# context.py
from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .artifacts import Artifact, ArtifactStore
from .errors import ArtifactAccessError, ContextClosedError, ContractError
from .model import Job, JobInstance
from .secrets import NO_SECRETS, SecretProvider


@dataclass(frozen=True)
class TriggerInfo:
    """
    What started the run.

    ref may be a bare branch ("main") or a full ref ("refs/heads/main").
    changed_files, when given, is the precomputed diff of base..head and wins
    over asking git.
    """
    event: str = "push"
    ref: str = ""
    base: str | None = None
    head: str = "HEAD"
    changed_files: Optional[tuple] = None

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref


@dataclass
class RunContext:
    """Run-scoped state handed to every job instance at construction time."""
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    secrets: SecretProvider = NO_SECRETS
    repo_root: Path = field(default_factory=lambda: Path(".").resolve())
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


_BOOL_STRINGS = {"true": True, "1": True, "false": False, "0": False}


def check_output(job: Job, name: str, value: Any, *, coerce: bool = False) -> Any:
    """
    Validate an output value against the job's declared contract.
    coerce=True converts strings (shell outputs) into the declared type.
    """
    if name not in job.outputs:
        raise ContractError(
            f"Job '{job.name}' set undeclared output '{name}'. Declared: {sorted(job.outputs)}"
        )
    expected = job.outputs[name]
    if coerce and isinstance(value, str) and expected is bool:
        flag = _BOOL_STRINGS.get(value.strip().lower())
        if flag is None:
            raise ContractError(
                f"Job '{job.name}' output '{name}'={value!r} is not a valid bool "
                f"(expected one of {sorted(_BOOL_STRINGS)})"
            )
        return flag
    if coerce and isinstance(value, str) and expected is not str:
        try:
            return expected(value)
        except (TypeError, ValueError) as e:
            raise ContractError(
                f"Job '{job.name}' output '{name}'={value!r} is not a valid {expected.__name__}"
            ) from e
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, expected):
        raise ContractError(
            f"Job '{job.name}' output '{name}' must be {expected.__name__}, got {type(value).__name__}"
        )
    return value


class StepContext:
    """
    What a python step sees: its matrix cell, env, resolved inputs, secrets,
    and the artifact store restricted to its upstream jobs.
    """

    def __init__(
        self,
        job: Job,
        instance: JobInstance,
        run: RunContext,
        store: ArtifactStore,
        *,
        env: Dict[str, str],
        inputs: Dict[str, Any],
        upstream: Set[str],
    ):
        self.job = job
        self.instance = instance
        self.run = run
        self.store = store
        self.env = env
        self.inputs = inputs
        self.outputs: Dict[str, Any] = {}
        self.summaries: List[str] = []
        self._upstream = upstream
        self._closed = False
        self._write_lock = threading.Lock()

    def detached(self) -> "StepContext":
        """
        A view sharing this context's outputs, summaries and store that can be
        closed on its own. Used for steps the runner may stop waiting for.
        """
        view = copy.copy(self)
        view._closed = False
        view._write_lock = threading.Lock()
        return view

    def close(self) -> None:
        """Refuse every later write. Waits for a write already in progress."""
        with self._write_lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self, what: str) -> None:
        if self._closed:
            raise ContextClosedError(
                f"{self.instance.id}: {what} after the step was abandoned"
            )

    @property
    def matrix(self) -> Dict[str, Any]:
        return self.instance.matrix

    @property
    def trigger(self) -> TriggerInfo:
        return self.run.trigger

    @property
    def cancelled(self) -> bool:
        return self.run.cancelled

    def secret(self, name: str) -> Optional[str]:
        return self.run.secrets.get(name)

    # ---- artifacts ----
    def publish(self, name: str, data: bytes | str) -> Artifact:
        with self._write_lock:
            self._check_open(f"publish {name!r}")
            return self.store.publish(self.instance, name, data)

    def _check_readable(self, job: str) -> None:
        if job != self.job.name and job not in self._upstream:
            raise ArtifactAccessError(
                f"Job '{self.job.name}' cannot read artifacts of '{job}': not an upstream job"
            )

    def fetch(self, job: str, name: str) -> Artifact:
        self._check_readable(job)
        return self.store.fetch(job, name)

    def fetch_all(self, job: str, name: str) -> List[Artifact]:
        self._check_readable(job)
        return self.store.fetch_all(job, name)

    def fetch_matching(self, job: str, pattern: str) -> List[Artifact]:
        self._check_readable(job)
        return self.store.fetch_matching(job, pattern)

    # ---- outputs / summary ----
    def set_output(self, name: str, value: Any, *, coerce: bool = False) -> None:
        value = check_output(self.job, name, value, coerce=coerce)
        with self._write_lock:
            self._check_open(f"set output {name!r}")
            self.outputs[name] = value

    def summary(self, text: str) -> None:
        with self._write_lock:
            self._check_open("add a summary")
            self.summaries.append(text)
