# settings.py
#
# Environment-driven defaults. CLI options override these.
#
#   MATRIXCI_CACHE_DIR    filesystem cache location (default .matrixci/cache)
#   MATRIXCI_REDIS_URL    use a redis blob store instead of the filesystem
#   MATRIXCI_WORKERS      max concurrent jobs per stage
#   MATRIXCI_JOB_TIMEOUT  default per-job wall-clock timeout, seconds
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from .cache import BlobStore, FileBlobStore, RedisBlobStore
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = ".matrixci/cache"


def _int_env(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", {name: raw}) from None
    if value < 1:
        raise ConfigurationError(f"{name} must be >= 1", {name: raw})
    return value


def _float_env(environ: Mapping[str, str], name: str) -> Optional[float]:
    raw = environ.get(name)
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", {name: raw}) from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0", {name: raw})
    return value


@dataclass(frozen=True)
class Settings:
    cache_dir: str = DEFAULT_CACHE_DIR
    redis_url: Optional[str] = None
    workers: Optional[int] = None
    job_timeout: Optional[float] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if environ is None else environ
        return cls(
            cache_dir=env.get("MATRIXCI_CACHE_DIR") or DEFAULT_CACHE_DIR,
            redis_url=env.get("MATRIXCI_REDIS_URL") or None,
            workers=_int_env(env, "MATRIXCI_WORKERS"),
            job_timeout=_float_env(env, "MATRIXCI_JOB_TIMEOUT"),
        )

    def override(self, **changes) -> Settings:
        """Apply CLI options; None means 'not given'."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes) if changes else self


def build_blob_store(settings: Settings, *, repo_root: str | Path = ".") -> BlobStore:
    if settings.redis_url:
        logger.debug("cache backend: redis %s", settings.redis_url)
        return RedisBlobStore.from_url(settings.redis_url)
    root = Path(settings.cache_dir)
    if not root.is_absolute():
        root = Path(repo_root) / root
    logger.debug("cache backend: filesystem %s", root)
    return FileBlobStore(root)
