# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import ContractError, CycleError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Edges run upstream -> dependent for both `needs` and `optional_needs`.
    Returns (adjacency, in-degree).
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.upstream:
            if dep not in name_set:
                raise ValueError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs within a stage do not depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = sorted(q)
        q.clear()
        for node in level:
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        raise CycleError(sorted(n for n, d in indeg.items() if d > 0))

    return levels


def topo_order(jobs: List[Job]) -> List[str]:
    """Flat topological order of job names."""
    adj, indeg = build_dag(jobs)
    return [name for level in topo_levels(adj, indeg) for name in level]


def upstream_closure(jobs: List[Job]) -> Dict[str, Set[str]]:
    """Every job's transitive upstream set. Assumes an acyclic graph."""
    by_name = {j.name: j for j in jobs}
    closure: Dict[str, Set[str]] = {}

    def _visit(name: str) -> Set[str]:
        if name in closure:
            return closure[name]
        acc: Set[str] = set()
        for dep in by_name[name].upstream:
            acc.add(dep)
            acc |= _visit(dep)
        closure[name] = acc
        return acc

    for name in by_name:
        _visit(name)
    return closure


def parse_ref(ref: str) -> Tuple[str, str]:
    """'job.output' -> ('job', 'output')"""
    job, sep, output = ref.partition(".")
    if not sep or not job or not output:
        raise ContractError(f"Input reference must look like 'job.output', got {ref!r}")
    return job, output


def validate_contracts(jobs: List[Job]) -> None:
    """
    Check every declared input against upstream output declarations.

    An input may only reference a direct upstream job (needs or optional_needs)
    and an output that job declares.
    """
    by_name = {j.name: j for j in jobs}
    for job in jobs:
        for local, ref in job.inputs.items():
            src, output = parse_ref(ref)
            if src not in by_name:
                raise ContractError(f"Job '{job.name}' input '{local}' references unknown job '{src}'")
            if src not in job.upstream:
                raise ContractError(
                    f"Job '{job.name}' input '{local}' references '{src}', which is not in its needs"
                )
            declared = by_name[src].outputs
            if output not in declared:
                raise ContractError(
                    f"Job '{job.name}' input '{local}' references '{ref}', but '{src}' only declares "
                    f"{sorted(declared)}"
                )
