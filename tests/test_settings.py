from __future__ import annotations

import pytest

from matrixci.cache import FileBlobStore, RedisBlobStore
from matrixci.errors import ConfigurationError
from matrixci.settings import DEFAULT_CACHE_DIR, Settings, build_blob_store


def test_defaults():
    s = Settings.from_env({})

    assert s.cache_dir == DEFAULT_CACHE_DIR
    assert s.redis_url is None
    assert s.workers is None
    assert s.job_timeout is None


def test_reads_environment():
    s = Settings.from_env(
        {
            "MATRIXCI_CACHE_DIR": "/var/cache/ci",
            "MATRIXCI_REDIS_URL": "redis://cache:6379/0",
            "MATRIXCI_WORKERS": "4",
            "MATRIXCI_JOB_TIMEOUT": "1800",
        }
    )

    assert s == Settings("/var/cache/ci", "redis://cache:6379/0", 4, 1800.0)


@pytest.mark.parametrize(
    "env",
    [
        {"MATRIXCI_WORKERS": "many"},
        {"MATRIXCI_WORKERS": "0"},
        {"MATRIXCI_JOB_TIMEOUT": "-5"},
    ],
)
def test_rejects_bad_values(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_cli_options_override_only_when_given():
    s = Settings.from_env({"MATRIXCI_WORKERS": "4"}).override(workers=None, cache_dir="here")

    assert s.workers == 4
    assert s.cache_dir == "here"


def test_filesystem_store_relative_to_repo(tmp_path):
    store = build_blob_store(Settings(cache_dir="cache"), repo_root=tmp_path)

    assert isinstance(store, FileBlobStore)
    assert store.root == (tmp_path / "cache").resolve()


def test_redis_store_when_url_set():
    # from_url does not connect until the first command
    store = build_blob_store(Settings(redis_url="redis://localhost:6379/0"))

    assert isinstance(store, RedisBlobStore)
