__version__ = "0.1.0"

from .dsl import job, sh, task, upload, download, axis, release_gate, wf
from .coverage import coverage_job
from .context import RunContext, TriggerInfo
from .gate import ReleaseGate
from .model import Job, Step, Status
from .scheduler import Pipeline, RunResult, run_pipeline

__all__ = [
    "job", "sh", "task", "upload", "download", "axis", "release_gate", "wf",
    "coverage_job", "RunContext", "TriggerInfo", "ReleaseGate",
    "Job", "Step", "Status", "Pipeline", "RunResult", "run_pipeline",
]
