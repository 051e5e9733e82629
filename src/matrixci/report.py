from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .context import TriggerInfo
from .scheduler import RunResult

# -------------------- Run report --------------------

class StepReport(BaseModel):
    name: str
    status: str
    reason: str = ""
    duration: float = 0.0

class InstanceReport(BaseModel):
    id: str
    matrix: dict[str, Any] = Field(default_factory=dict)
    status: str
    reason: str = ""
    steps: list[StepReport] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    summary: list[str] = Field(default_factory=list)

class JobReport(BaseModel):
    name: str
    status: str
    reason: str = ""
    advisory: bool = False
    outputs: dict[str, Any] = Field(default_factory=dict)
    instances: list[InstanceReport] = Field(default_factory=list)

class GateReport(BaseModel):
    job: str
    eligible: bool
    checks: dict[str, bool] = Field(default_factory=dict)

class ArtifactReport(BaseModel):
    job: str
    producer: str
    name: str
    digest: str
    size: int

class RunReport(BaseModel):
    status: str
    cancelled: bool = False
    jobs: list[JobReport]
    gates: list[GateReport] = Field(default_factory=list)
    artifacts: list[ArtifactReport] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: RunResult) -> "RunReport":
        jobs = [
            JobReport(
                name=j.name,
                status=j.status.value,
                reason=j.reason,
                advisory=j.advisory,
                outputs=j.outputs,
                instances=[
                    InstanceReport(
                        id=i.instance.id,
                        matrix=i.instance.matrix,
                        status=i.status.value,
                        reason=i.reason,
                        steps=[StepReport(name=s.name, status=s.status, reason=s.reason, duration=s.duration)
                               for s in i.steps],
                        outputs=i.outputs,
                        summary=i.summary,
                    )
                    for i in j.instances
                ],
            )
            for j in result.jobs.values()
        ]
        gates = [
            GateReport(job=name, eligible=d.eligible, checks=dict(d.checks))
            for name, d in result.decisions.items()
        ]
        artifacts = [
            ArtifactReport(job=a.job, producer=a.producer.id, name=a.name, digest=a.digest, size=a.size)
            for a in result.store.all()
        ]
        return cls(
            status=result.status.value,
            cancelled=result.cancelled,
            jobs=jobs,
            gates=gates,
            artifacts=artifacts,
        )

    def write(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return p

# -------------------- Trigger event payload --------------------

class EventPayload(BaseModel):
    """The subset of a push/pull_request webhook payload the gate needs."""
    ref: str = ""
    before: str | None = None
    after: str = "HEAD"

    def to_trigger(self, event: str) -> TriggerInfo:
        return TriggerInfo(event=event, ref=self.ref, base=self.before, head=self.after or "HEAD")
