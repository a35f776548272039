# artifacts.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import logging
import tarfile
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import ArtifactNotFoundError, EmptyArtifactError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout (any backend):
#   <run_id>/<name>.tar.gz      packed files, paths relative to upload root
#   <run_id>/<name>.json        manifest (Artifact.to_dict)
#
# The manifest is written after the blob and deleted before it, so a
# reader that finds a manifest can fetch the blob.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".relayci/artifacts"
DEFAULT_RETENTION_DAYS = 90
IF_NO_FILES_FOUND = ("error", "warn", "ignore")


# ---------------------------------------------------------------------
# Transport backends
# ---------------------------------------------------------------------

class StorageBackend(Protocol):
    def put(self, key: str, data: bytes) -> None: ...
    def get(self, key: str) -> bytes: ...  # raises KeyError when missing
    def delete(self, key: str) -> None: ...
    def keys(self, prefix: str = "") -> List[str]: ...


class MemoryBackend:
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            return self._blobs[key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))


class LocalDiskBackend:
    """
    File-based blob store:
      root/
        <run_id>/
          <name>.tar.gz
          <name>.json
    """

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        p = (self.root / key).resolve()
        if self.root not in p.parents:
            raise ValueError(f"Invalid artifact key: {key!r}")
        return p

    def put(self, key: str, data: bytes) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_name(p.name + ".tmp")
        try:
            # write tmp, then atomic rename
            tmp.write_bytes(data)
            tmp.replace(p)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise KeyError(key) from None

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self, prefix: str = "") -> List[str]:
        out = []
        for p in self.root.rglob("*"):
            if p.is_file() and not p.name.endswith(".tmp"):
                key = p.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    out.append(key)
        return sorted(out)


# ---------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------

def resolve_files(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand upload patterns into concrete files under `root`.
    Supports:
      - file path: "dist/app.whl"
      - dir path:  "dist/"
      - glob:      "reports/**/*.xml"
      - exclusion: "!dist/*.tmp"
    """
    root = root.resolve()
    include: List[str] = []
    exclude: List[str] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        (exclude if pat.startswith("!") else include).append(pat.lstrip("!"))

    found: Dict[str, Path] = {}
    for pat in include:
        candidates = [root / pat] if (root / pat).exists() else sorted(root.glob(pat))
        for c in candidates:
            files = sorted(f for f in c.rglob("*") if f.is_file()) if c.is_dir() else [c]
            for f in files:
                if f.is_file():
                    found[f.resolve().relative_to(root).as_posix()] = f

    rels = [r for r in sorted(found) if not any(Path(r).match(e) for e in exclude)]
    return [found[r] for r in rels]


def _pack(root: Path, files: List[Path]) -> bytes:
    buf = io.BytesIO()
    # fixed mtimes + sorted members -> same input, same bytes
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w") as tar:
            for f in files:
                data = f.read_bytes()
                info = tarfile.TarInfo(name=f.resolve().relative_to(root.resolve()).as_posix())
                info.size = len(data)
                info.mtime = 0
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _unpack(blob: bytes) -> Dict[str, bytes]:
    out: Dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            rel = Path(member.name)
            if rel.is_absolute() or ".." in rel.parts:
                raise ValueError(f"Refusing unsafe artifact member: {member.name}")
            fh = tar.extractfile(member)
            out[member.name] = fh.read() if fh else b""
    return out


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Artifact:
    name: str
    run_id: str
    files: List[str] = field(default_factory=list)
    size: int = 0
    digest: str = ""
    created_at: float = 0.0
    expires_at: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Artifact":
        return cls(**data)

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class ArtifactStore:
    """Name-addressed artifacts bound to one PipelineRun."""

    def __init__(
        self,
        backend: StorageBackend,
        run_id: str,
        *,
        retention_days: float = DEFAULT_RETENTION_DAYS,
    ):
        self.backend = backend
        self.run_id = run_id
        self.retention_days = retention_days

    def _blob_key(self, name: str) -> str:
        return f"{self.run_id}/{name}.tar.gz"

    def _manifest_key(self, name: str) -> str:
        return f"{self.run_id}/{name}.json"

    @staticmethod
    def _check_name(name: str) -> None:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"Invalid artifact name: {name!r}")

    def upload(
        self,
        name: str,
        patterns: Iterable[str],
        root: str | Path = ".",
        *,
        if_no_files_found: str = "error",
        retention_days: Optional[float] = None,
    ) -> Optional[Artifact]:
        """
        Pack every file matched by `patterns` (relative to `root`) into
        artifact `name`. Re-uploading a name replaces it.

        Raises:
          EmptyArtifactError: nothing matched and if_no_files_found == "error"
        """
        self._check_name(name)
        if if_no_files_found not in IF_NO_FILES_FOUND:
            raise ValueError(f"if_no_files_found must be one of {IF_NO_FILES_FOUND}")

        patterns = list(patterns)
        root_p = Path(root).resolve()
        files = resolve_files(root_p, patterns)
        if not files:
            if if_no_files_found == "error":
                raise EmptyArtifactError(name, patterns)
            if if_no_files_found == "warn":
                log.warning("artifact %s: no files matched %s", name, patterns)
            return None

        blob = _pack(root_p, files)
        now = time.time()
        days = self.retention_days if retention_days is None else retention_days
        artifact = Artifact(
            name=name,
            run_id=self.run_id,
            files=[f.resolve().relative_to(root_p).as_posix() for f in files],
            size=len(blob),
            digest=hashlib.sha256(blob).hexdigest(),
            created_at=now,
            expires_at=now + days * 86400,
        )
        self.backend.put(self._blob_key(name), blob)
        self.backend.put(self._manifest_key(name), json.dumps(artifact.to_dict(), sort_keys=True).encode("utf-8"))
        log.debug("artifact %s/%s uploaded (%d files, %d bytes)", self.run_id, name, len(files), len(blob))
        return artifact

    def get(self, name: str) -> Artifact:
        try:
            raw = self.backend.get(self._manifest_key(name))
        except KeyError:
            raise ArtifactNotFoundError(name, self.run_id) from None
        return Artifact.from_dict(json.loads(raw.decode("utf-8")))

    def _fetch(self, name: str) -> Dict[str, bytes]:
        artifact = self.get(name)
        try:
            blob = self.backend.get(self._blob_key(name))
        except KeyError:
            raise ArtifactNotFoundError(name, self.run_id) from None
        if hashlib.sha256(blob).hexdigest() != artifact.digest:
            raise ValueError(f"Artifact '{name}' digest mismatch")
        return _unpack(blob)

    def read(self, name: str) -> Dict[str, bytes]:
        """Return {relative path: bytes} exactly as uploaded."""
        return self._fetch(name)

    def download(self, name: str, dest: str | Path = ".") -> List[Path]:
        """
        Extract artifact `name` under `dest`.

        Raises:
          ArtifactNotFoundError: no such artifact in this run
        """
        # The whole blob is fetched before anything is written, so a purge
        # racing with us cannot truncate the extraction.
        contents = self._fetch(name)
        dest_p = Path(dest).resolve()
        written: List[Path] = []
        for rel, data in contents.items():
            out = dest_p / rel
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(data)
            written.append(out)
        return written

    def list(self) -> List[Artifact]:
        out = []
        for key in self.backend.keys(f"{self.run_id}/"):
            if key.endswith(".json"):
                out.append(Artifact.from_dict(json.loads(self.backend.get(key).decode("utf-8"))))
        return sorted(out, key=lambda a: a.name)

    def delete(self, name: str) -> None:
        self.backend.delete(self._manifest_key(name))
        self.backend.delete(self._blob_key(name))

    def purge_expired(self, now: Optional[float] = None) -> List[str]:
        return [a.name for a in purge_expired(self.backend, now=now, run_id=self.run_id)]


def purge_expired(
    backend: StorageBackend,
    *,
    now: Optional[float] = None,
    run_id: Optional[str] = None,
) -> List[Artifact]:
    """Delete expired artifacts (optionally only those of one run). Returns what was deleted."""
    now = time.time() if now is None else now
    removed: List[Artifact] = []
    prefix = f"{run_id}/" if run_id else ""
    for key in backend.keys(prefix):
        if not key.endswith(".json"):
            continue
        try:
            artifact = Artifact.from_dict(json.loads(backend.get(key).decode("utf-8")))
        except KeyError:
            continue
        if artifact.expired(now):
            store = ArtifactStore(backend, artifact.run_id)
            store.delete(artifact.name)
            removed.append(artifact)
            log.info("purged expired artifact %s/%s", artifact.run_id, artifact.name)
    return removed
