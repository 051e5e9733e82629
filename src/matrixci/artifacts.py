# artifacts.py
from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ArtifactConflictError, ArtifactNotFoundError
from .model import JobInstance

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are keyed by (producer job, artifact name). Each key holds one
# entry per producing instance, so sibling matrix cells publishing the same
# name is a merge point, not an overwrite:
#
#   (validate, "cov") -> {validate (os=A, py=1): Artifact, validate (os=B, py=1): Artifact, ...}
#
# Blobs are content-addressed by sha256. The store is append-only: an
# instance cannot replace something it already published.
# ---------------------------------------------------------------------


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


@dataclass(frozen=True)
class Artifact:
    name: str
    producer: JobInstance
    digest: str
    version: int           # publish sequence number within the store
    data: bytes

    @property
    def job(self) -> str:
        return self.producer.job

    @property
    def size(self) -> int:
        return len(self.data)

    def text(self, encoding: str = "utf-8") -> str:
        return self.data.decode(encoding)


class ArtifactStore:
    """
    Run-scoped, thread-safe artifact store.

    Many instances may publish concurrently. Merge reads (fetch_all) are only
    meaningful once every producing instance is terminal; the scheduler is
    responsible for issuing them after that point.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_key: Dict[Tuple[str, str], Dict[str, Artifact]] = {}
        self._by_digest: Dict[str, bytes] = {}
        self._seq = 0

    def publish(self, producer: JobInstance, name: str, data: bytes | str) -> Artifact:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not name:
            raise ValueError(f"[{producer}] artifact name must not be empty")

        digest = _sha256_bytes(data)
        with self._lock:
            slot = self._by_key.setdefault((producer.job, name), {})
            if producer.id in slot:
                raise ArtifactConflictError(
                    f"[{producer}] artifact '{name}' was already published by this instance"
                )
            self._seq += 1
            art = Artifact(name=name, producer=producer, digest=digest, version=self._seq, data=data)
            slot[producer.id] = art
            self._by_digest.setdefault(digest, data)
        return art

    def fetch(self, job: str, name: str) -> Artifact:
        """Fetch a single-producer artifact."""
        arts = self.fetch_all(job, name)
        if len(arts) > 1:
            producers = [a.producer.id for a in arts]
            raise ArtifactNotFoundError(
                f"Artifact '{name}' of job '{job}' has {len(arts)} producers {producers}; use fetch_all"
            )
        return arts[0]

    def fetch_all(self, job: str, name: str) -> List[Artifact]:
        """Merge-multiple read: every instance's artifact published under `name`."""
        with self._lock:
            slot = self._by_key.get((job, name))
            arts = list(slot.values()) if slot else []
        if not arts:
            raise ArtifactNotFoundError(f"No artifact '{name}' published by job '{job}'")
        return _ordered(arts)

    def fetch_matching(self, job: str, pattern: str) -> List[Artifact]:
        """Merge-multiple read over every artifact name of `job` matching a glob. May be empty."""
        with self._lock:
            arts = [
                a
                for (j, n), slot in self._by_key.items()
                if j == job and fnmatch(n, pattern)
                for a in slot.values()
            ]
        return _ordered(arts)

    def by_digest(self, digest: str) -> bytes:
        with self._lock:
            data = self._by_digest.get(digest)
        if data is None:
            raise ArtifactNotFoundError(f"No blob with digest {digest}")
        return data

    def names(self, job: Optional[str] = None) -> List[Tuple[str, str]]:
        with self._lock:
            keys = list(self._by_key)
        return sorted(k for k in keys if job is None or k[0] == job)

    def all(self) -> List[Artifact]:
        with self._lock:
            arts = [a for slot in self._by_key.values() for a in slot.values()]
        return sorted(arts, key=lambda a: a.version)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slot) for slot in self._by_key.values())

    def export(self, root: str | Path) -> List[Path]:
        """
        Write every artifact to disk:
          root/
            <job>/
              <instance index>/<artifact name>
        """
        root_p = Path(root).resolve()
        written: List[Path] = []
        for art in self.all():
            dest = root_p / art.job / str(art.producer.index) / art.name
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(dest.name + ".tmp")
            try:
                # write to tmp, then atomic rename
                tmp.write_bytes(art.data)
                tmp.replace(dest)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
            written.append(dest)
        return written


def _ordered(arts: List[Artifact]) -> List[Artifact]:
    # instance order, not completion order
    return sorted(arts, key=lambda a: (a.producer.index, a.name))
