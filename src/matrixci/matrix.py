# matrix.py
from __future__ import annotations

import re
from itertools import product
from typing import Any, Dict, List

from .model import Job, JobInstance


def expand(job: Job) -> List[JobInstance]:
    """
    Expand a job into its concrete instances.

    The cross-product walks the axes in declared order, so the result is stable
    for a given axis ordering. No axes -> exactly one instance.
    """
    axes = list(job.axes or [])
    names = [a.name for a in axes]
    if len(set(names)) != len(names):
        raise ValueError(f"Job '{job.name}' declares duplicate matrix axes: {names}")

    if not axes:
        return [JobInstance(job=job.name, index=0)]

    cells = product(*(a.values for a in axes))
    return [
        JobInstance(job=job.name, index=i, values=tuple(zip(names, cell)))
        for i, cell in enumerate(cells)
    ]


def instance_count(job: Job) -> int:
    n = 1
    for a in job.axes or []:
        n *= len(a.values)
    return n


_PLACEHOLDER = re.compile(r"\{\{\s*matrix\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render(text: str, matrix: Dict[str, Any]) -> str:
    """Replace {{ matrix.<axis> }} placeholders with the instance's values."""
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in matrix:
            raise KeyError(f"Unknown matrix axis in '{text}': {key}")
        return str(matrix[key])

    return _PLACEHOLDER.sub(_sub, text)
