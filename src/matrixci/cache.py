# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import shutil
import tarfile
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import redis

from .errors import CacheError
from .model import AxisValues, CacheSpec

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# cache_key = hash(
#     axis values of the owning job,
#     fingerprint of the dependency-lock inputs (Cargo.lock, ...),
#     the cached directory list,
# )
#
# Changing a toolchain channel or a lock file changes the key, so stale
# entries are never read back; nothing has to be evicted by hand.
#
# Cache artifact:
#   a tar.gz holding each declared directory under "<index>/" plus a
#   manifest.json (key + directory list) for explainability.
# ---------------------------------------------------------------------

KEY_VERSION = 2  # bump this if you change hashing format
MANIFEST_NAME = "manifest.json"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(repo_root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "vendor/"
      - glob:      "requirements*.txt", "crates/**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(repo_root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def fingerprint_inputs(
    repo_root: str | Path,
    inputs: Sequence[str],
    *,
    excludes: Optional[List[str]] = None,
) -> str:
    """
    Content hash of the declared lock inputs: relative paths + file contents.
    Patterns that match nothing are part of the fingerprint too, so a lock
    file appearing or disappearing changes the key.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])

    file_fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, exclude_globs):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    missing = sorted(pat for pat in inputs if not _resolve_globs(root, [pat]))
    return _sha256_str(_json_dumps_stable({"files": file_fps, "missing": missing}))


def compute_cache_key(axis_values: AxisValues, fingerprint: str, directories: Sequence[str] = ()) -> str:
    payload = {
        "v": KEY_VERSION,
        "axes": [list(pair) for pair in axis_values],
        "fingerprint": fingerprint,
        "dirs": list(directories),
    }
    return _sha256_str(_json_dumps_stable(payload))


def cache_spec_for(
    axis_values: AxisValues,
    directories: Sequence[str],
    fingerprint: str,
) -> CacheSpec:
    return CacheSpec(
        key=compute_cache_key(axis_values, fingerprint, directories),
        directories=tuple(directories),
    )


_VAR = re.compile(r"\$(?:\{(\w+)\}|(\w+))")


def resolve_directory(entry: str, root: str | Path, env: Mapping[str, str]) -> Path:
    """
    `$HOME/.ccache` / `${HOME}/x` / `~/x` expand against the job's explicit
    environment; relative entries are relative to the working tree.
    """
    def _sub(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        return env.get(name, m.group(0))

    expanded = _VAR.sub(_sub, entry)
    if expanded.startswith("~") and "HOME" in env:
        expanded = env["HOME"] + expanded[1:]
    p = Path(expanded).expanduser()
    return p if p.is_absolute() else Path(root) / p


# ---------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheHandle:
    """
    Read-only snapshot of the cached directories for one key.

    The archive bytes never change once built, so a reader holding a handle
    is unaffected by a concurrent writer replacing the stored entry.
    """
    key: str
    archive: bytes

    @classmethod
    def capture(
        cls,
        spec: CacheSpec,
        root: str | Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> CacheHandle:
        env = env or {}
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for index, entry in enumerate(spec.directories):
                src = resolve_directory(entry, root, env)
                if not src.is_dir():
                    logger.debug("cache: %s is not a directory, skipped", src)
                    continue
                for f in _iter_files_under(src):
                    rel = f.relative_to(src).as_posix()
                    if _matches_any_glob(rel, DEFAULT_CACHE_EXCLUDES):
                        continue
                    tar.add(str(f), arcname=f"{index}/{rel}", recursive=False)

            manifest = {
                "key": spec.key,
                "directories": list(spec.directories),
                "generated_at_unix": int(time.time()),
            }
            payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
            info = tarfile.TarInfo(name=MANIFEST_NAME)
            info.size = len(payload)
            info.mtime = manifest["generated_at_unix"]
            tar.addfile(info, fileobj=io.BytesIO(payload))
        return cls(key=spec.key, archive=buf.getvalue())

    def manifest(self) -> Dict:
        try:
            with tarfile.open(fileobj=io.BytesIO(self.archive), mode="r:gz") as tar:
                member = tar.extractfile(MANIFEST_NAME)
                if member is None:
                    raise CacheError("cache archive has no manifest", {"key": self.key})
                return json.loads(member.read().decode("utf-8"))
        except (tarfile.TarError, KeyError, ValueError) as e:
            raise CacheError(f"corrupt cache archive: {e}", {"key": self.key}) from e

    def restore(self, root: str | Path, env: Optional[Mapping[str, str]] = None) -> List[Path]:
        """
        Materialize the snapshot into the working tree ("overwrite by extraction").
        Returns the directories that were restored.

        Raises:
            CacheError: the archive cannot be read or written out
        """
        env = env or {}
        directories = self.manifest().get("directories", [])
        restored: List[Path] = []
        try:
            with tempfile.TemporaryDirectory(prefix="matrixci-cache-") as tmp:
                with tarfile.open(fileobj=io.BytesIO(self.archive), mode="r:gz") as tar:
                    tar.extractall(path=tmp, filter="data")
                for index, entry in enumerate(directories):
                    src = Path(tmp) / str(index)
                    if not src.is_dir():
                        continue
                    dst = resolve_directory(entry, root, env)
                    shutil.copytree(src, dst, dirs_exist_ok=True)
                    restored.append(dst)
        except (OSError, tarfile.TarError) as e:
            raise CacheError(f"cache restore failed: {e}", {"key": self.key}) from e
        return restored


# ---------------------------------------------------------------------
# Blob stores
# ---------------------------------------------------------------------

class BlobStore(ABC):
    """Key-value blob storage behind the cache. Backend failures raise CacheError."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(key)

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._blobs)


class FileBlobStore(BlobStore):
    """
    File-based store:
      root/
        <key>.tar.gz
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def get(self, key: str) -> Optional[bytes]:
        p = self.path_for(key)
        try:
            return p.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"cannot read {p}: {e}", {"key": key}) from e

    def put(self, key: str, data: bytes) -> None:
        p = self.path_for(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # tmp file in the same dir, then atomic rename
            fd, tmp = tempfile.mkstemp(dir=str(self.root), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, p)
            finally:
                if os.path.exists(tmp):
                    os.unlink(tmp)
        except OSError as e:
            raise CacheError(f"cannot write {p}: {e}", {"key": key}) from e

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as e:
            raise CacheError(f"cannot delete cache entry: {e}", {"key": key}) from e


class RedisBlobStore(BlobStore):
    """Blobs in Redis under `<prefix><key>`, optionally expiring after `ttl` seconds."""

    def __init__(
        self,
        client: "redis.Redis",
        *,
        prefix: str = "matrixci:cache:",
        ttl: Optional[int] = None,
    ):
        self.client = client
        self.prefix = prefix
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisBlobStore:
        return cls(redis.Redis.from_url(url), **kwargs)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self.client.get(self._k(key))
        except redis.RedisError as e:
            raise CacheError(f"redis get failed: {e}", {"key": key}) from e

    def put(self, key: str, data: bytes) -> None:
        try:
            self.client.set(self._k(key), data, ex=self.ttl)
        except redis.RedisError as e:
            raise CacheError(f"redis set failed: {e}", {"key": key}) from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._k(key))
        except redis.RedisError as e:
            raise CacheError(f"redis delete failed: {e}", {"key": key}) from e


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class CacheManager:
    """
    Keyed cache shared by all concurrent jobs.

      - fetch: lock-free read of the current snapshot; any failure is a miss
      - store: one writer per key at a time, last completed write wins
      - on_eviction: external storage pressure; honored before the next store
    """

    def __init__(self, store: BlobStore):
        self.blobs = store
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._evicted: Set[str] = set()
        self._evicted_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def fetch(self, spec: CacheSpec) -> Optional[CacheHandle]:
        with self._evicted_guard:
            if spec.key in self._evicted:
                return None
        try:
            blob = self.blobs.get(spec.key)
        except CacheError as e:
            logger.warning("cache fetch failed, treating as miss: %s", e.message)
            return None
        if blob is None:
            return None
        return CacheHandle(key=spec.key, archive=blob)

    def snapshot(
        self,
        spec: CacheSpec,
        root: str | Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> Optional[CacheHandle]:
        try:
            return CacheHandle.capture(spec, root, env)
        except (OSError, tarfile.TarError) as e:
            logger.warning("cache snapshot of %s failed: %s", spec.key[:12], e)
            return None

    def store(self, spec: CacheSpec, handle: CacheHandle) -> bool:
        """Persist `handle` under `spec.key`. Returns False (and logs) on failure."""
        self._honor_evictions()
        with self._lock_for(spec.key):
            try:
                self.blobs.put(spec.key, handle.archive)
            except CacheError as e:
                logger.warning("cache store failed: %s", e.message)
                return False
        return True

    def on_eviction(self, keys: Iterable[str]) -> None:
        """Storage-pressure callback: `keys` are dropped before the next store."""
        with self._evicted_guard:
            self._evicted.update(keys)

    def _honor_evictions(self) -> None:
        with self._evicted_guard:
            pending, self._evicted = self._evicted, set()
        for key in sorted(pending):
            with self._lock_for(key):
                try:
                    self.blobs.delete(key)
                    logger.debug("cache: evicted %s", key[:12])
                except CacheError as e:
                    logger.warning("cache eviction of %s failed: %s", key[:12], e.message)
