from __future__ import annotations
import os


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


WORKFLOW_FILE = os.environ.get("MATRIXCI_WORKFLOW", "matrixci_workflow.py")
MAX_WORKERS = int(os.environ.get("MATRIXCI_WORKERS", "0")) or _default_workers()
ARTIFACTS_DIR = os.environ.get("MATRIXCI_ARTIFACTS_DIR") or None
DEFAULT_BRANCH = os.environ.get("MATRIXCI_DEFAULT_BRANCH", "main")
