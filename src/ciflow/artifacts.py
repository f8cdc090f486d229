# artifacts.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .errors import ArtifactNotFound
from .model import JobInstance

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_DIR = ".ciflow/artifacts"

Payload = Union[bytes, Path]


@dataclass(frozen=True)
class ArtifactRef:
    """
    Locates one stored artifact.

    Artifacts are keyed by (run_id, name, job_instance_id): two matrix
    instances publishing the same name never overwrite each other.
    """
    run_id: str
    name: str
    job_instance_id: str
    digest: str  # sha256 hex of the payload
    size: int
    retention_days: int | None = None
    created_at: float = 0.0

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.run_id, self.name, self.job_instance_id)

    def to_dict(self) -> Dict:
        return asdict(self)


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _read_payload(payload: Payload) -> bytes:
    if isinstance(payload, Path):
        return payload.read_bytes()
    return bytes(payload)


class ArtifactStore:
    """In-memory artifact store, safe to share across worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._refs: Dict[Tuple[str, str, str], ArtifactRef] = {}
        self._blobs: Dict[Tuple[str, str, str], bytes] = {}

    def put(
        self,
        name: str,
        payload: Payload,
        instance: JobInstance,
        retention_days: int | None = None,
    ) -> ArtifactRef:
        data = _read_payload(payload)
        ref = ArtifactRef(
            run_id=instance.run_id,
            name=name,
            job_instance_id=instance.instance_id,
            digest=_sha256_bytes(data),
            size=len(data),
            retention_days=retention_days,
            created_at=time.time(),
        )
        self._write(ref, data)
        logger.debug("stored artifact %s from %s (%d bytes)", name, instance.instance_id, len(data))
        return ref

    def get(self, ref: ArtifactRef) -> bytes:
        with self._lock:
            data = self._blobs.get(ref.key)
        if data is None:
            raise ArtifactNotFound(ref.key)
        return data

    def find(self, run_id: str, name: str) -> List[ArtifactRef]:
        """All refs published under `name` in `run_id`, ordered by instance id."""
        return [r for r in self.list(run_id) if r.name == name]

    def list(self, run_id: str) -> List[ArtifactRef]:
        with self._lock:
            refs = [r for k, r in self._refs.items() if k[0] == run_id]
        return sorted(refs, key=lambda r: (r.name, r.job_instance_id))

    def _write(self, ref: ArtifactRef, data: bytes) -> None:
        with self._lock:
            self._refs[ref.key] = ref
            self._blobs[ref.key] = data


class FileArtifactStore(ArtifactStore):
    """
    File-based artifact store:
      root/
        <run_id>/
          <name>/
            <instance-slug>.bin
            <instance-slug>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        super().__init__()
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, run_id: str, name: str, instance_id: str) -> Tuple[Path, Path]:
        d = self.root / _slug(run_id) / _slug(name)
        stem = _slug(instance_id)
        return d / f"{stem}.bin", d / f"{stem}.manifest.json"

    def _write(self, ref: ArtifactRef, data: bytes) -> None:
        blob, manifest = self._paths(ref.run_id, ref.name, ref.job_instance_id)
        with self._lock:
            blob.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(blob, data)
            _atomic_write(
                manifest,
                json.dumps(ref.to_dict(), indent=2, sort_keys=True).encode("utf-8"),
            )

    def get(self, ref: ArtifactRef) -> bytes:
        blob, _ = self._paths(ref.run_id, ref.name, ref.job_instance_id)
        if not blob.exists():
            raise ArtifactNotFound(ref.key)
        return blob.read_bytes()

    def list(self, run_id: str) -> List[ArtifactRef]:
        run_dir = self.root / _slug(run_id)
        if not run_dir.exists():
            return []
        refs: List[ArtifactRef] = []
        for man in sorted(run_dir.glob("*/*.manifest.json")):
            ref = _load_manifest(man)
            if ref is not None:
                refs.append(ref)
        return sorted(refs, key=lambda r: (r.name, r.job_instance_id))


def _load_manifest(path: Path) -> Optional[ArtifactRef]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return ArtifactRef(**raw)
    except (OSError, ValueError, TypeError) as e:
        logger.warning("ignoring unreadable artifact manifest %s: %s", path, e)
        return None


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _slug(value: str) -> str:
    # "build (ubuntu, 17)" -> "build_ubuntu_17"
    return _SLUG_RE.sub("_", value).strip("_") or "_"
