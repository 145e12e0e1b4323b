from __future__ import annotations

import json
import textwrap

import pytest

from conftest import FakeSpawner, nightly_fails, travis_pipeline
from matrixci.cache import MemoryBlobStore
from matrixci.dsl import build, stage
from matrixci.errors import ConfigurationError
from matrixci.model import EXIT_CANCELLED, EXIT_FAILURE, EXIT_SUCCESS, JobStatus, PipelineStatus, StageStatus
from matrixci.process import CancelToken
from matrixci.runner import load_workflow, run_pipeline
from matrixci.settings import Settings


def _run(declaration, spawner, tmp_path, **kwargs):
    return run_pipeline(
        declaration,
        repo_root=tmp_path,
        settings=Settings(workers=8),
        store=MemoryBlobStore(),
        spawner=spawner,
        base_env={},
        **kwargs,
    )


def test_nightly_failures_are_tolerated(tmp_path):
    spawner = FakeSpawner({"./ci/test.sh": nightly_fails})
    verdict = _run(travis_pipeline(), spawner, tmp_path)

    assert verdict.status is PipelineStatus.SUCCESS
    assert verdict.exit_code == EXIT_SUCCESS
    assert len(verdict.results) == 7
    allowed = [r.job.number for r in verdict.results if r.allowed_failure]
    assert allowed == ["1.3", "1.6"]
    clippy = verdict.stages[1].results[0]
    assert clippy.status is JobStatus.SUCCESS


def test_clippy_failure_fails_pipeline(tmp_path):
    spawner = FakeSpawner({"cargo clippy -- -D clippy::all": 101})
    verdict = _run(travis_pipeline(), spawner, tmp_path)

    assert verdict.status is PipelineStatus.FAILURE
    assert verdict.exit_code == EXIT_FAILURE
    assert verdict.stages[1].status is StageStatus.FAILURE
    assert verdict.stages[1].results[0].exit_code == 101


def test_failed_stage_short_circuits_later_stages(tmp_path):
    spawner = FakeSpawner({"./ci/test.sh": lambda env: 1 if env["MATRIXCI_RUST"] == "stable" else 0})
    verdict = _run(travis_pipeline(), spawner, tmp_path)

    assert verdict.status is PipelineStatus.FAILURE
    later = verdict.stages[1]
    assert later.status is StageStatus.CANCELLED
    assert [r.status for r in later.results] == [JobStatus.CANCELLED]
    assert "cargo clippy -- -D clippy::all" not in spawner.commands()


def test_stage_allowed_to_fail_does_not_stop_pipeline(tmp_path):
    declaration = (
        build("test")
        .axis("os", "linux")
        .stages(stage("experimental", allow_failure=True), "test")
        .script("make test")
        .include(stage="experimental", script="make fuzz")
        .build()
    )
    spawner = FakeSpawner({"make fuzz": 1})
    verdict = _run(declaration, spawner, tmp_path)

    assert verdict.status is PipelineStatus.SUCCESS
    assert verdict.tolerated_stages == ["experimental"]
    assert verdict.stages[1].status is StageStatus.SUCCESS


def test_after_pipeline_success_runs_once_on_success(spawner, tmp_path):
    declaration = build().axis("os", "linux", "osx").script("make").after_pipeline_success("./notify.sh").build()
    verdict = _run(declaration, spawner, tmp_path)

    assert spawner.commands().count("./notify.sh") == 1
    assert verdict.after_success.status is JobStatus.SUCCESS


def test_after_pipeline_success_failure_keeps_verdict(tmp_path):
    spawner = FakeSpawner({"./notify.sh": 1})
    declaration = build().axis("os", "linux").script("make").after_pipeline_success("./notify.sh").build()
    verdict = _run(declaration, spawner, tmp_path)

    assert verdict.status is PipelineStatus.SUCCESS
    assert verdict.after_success.status is JobStatus.FAILED


def test_after_pipeline_success_skipped_on_failure(tmp_path):
    spawner = FakeSpawner({"make": 2})
    declaration = build().axis("os", "linux").script("make").after_pipeline_success("./notify.sh").build()
    verdict = _run(declaration, spawner, tmp_path)

    assert verdict.status is PipelineStatus.FAILURE
    assert verdict.after_success is None
    assert "./notify.sh" not in spawner.commands()


def test_cancelled_pipeline(spawner, tmp_path):
    token = CancelToken()
    token.cancel()
    verdict = _run(travis_pipeline(), spawner, tmp_path, cancel=token)

    assert verdict.status is PipelineStatus.CANCELLED
    assert verdict.exit_code == EXIT_CANCELLED
    assert spawner.calls == []


def test_configuration_error_raises_before_any_job(spawner, tmp_path):
    declaration = build().axis("os", "linux").script("make").exclude(os="windows").build()

    with pytest.raises(ConfigurationError):
        _run(declaration, spawner, tmp_path)
    assert spawner.calls == []


def test_mapping_declarations_are_accepted(spawner, tmp_path):
    verdict = _run({"matrix": {"os": ["linux", "osx"]}, "script": "make"}, spawner, tmp_path)

    assert verdict.status is PipelineStatus.SUCCESS
    assert len(verdict.results) == 2


def test_cache_survives_between_runs(spawner, tmp_path):
    store = MemoryBlobStore()
    (tmp_path / "Cargo.lock").write_text("v1")
    (tmp_path / "target").mkdir()
    (tmp_path / "target" / "lib.rlib").write_text("compiled")
    declaration = build().axis("rust", "stable").script("cargo build").with_cache(dirs=["target"], inputs=["Cargo.lock"]).build()

    run_pipeline(declaration, repo_root=tmp_path, settings=Settings(), store=store, spawner=spawner, base_env={})
    assert len(store.keys()) == 1

    (tmp_path / "target" / "lib.rlib").unlink()
    run_pipeline(declaration, repo_root=tmp_path, settings=Settings(), store=store, spawner=spawner, base_env={})
    assert (tmp_path / "target" / "lib.rlib").read_text() == "compiled"

    # a lock file change means a new key; the old entry is never read back
    (tmp_path / "Cargo.lock").write_text("v2")
    run_pipeline(declaration, repo_root=tmp_path, settings=Settings(), store=store, spawner=spawner, base_env={})
    assert len(store.keys()) == 2


def test_verdict_report_is_json_serializable(tmp_path):
    spawner = FakeSpawner({"./ci/test.sh": nightly_fails})
    report = _run(travis_pipeline(), spawner, tmp_path).to_dict()

    decoded = json.loads(json.dumps(report))
    assert decoded["status"] == "success"
    assert decoded["exit_code"] == 0
    jobs = decoded["stages"]["build and test"]["jobs"]
    assert [j["allowed_failure"] for j in jobs] == [False, False, True, False, False, True]


# ---------------------------------------------------------------------
# Workflow files
# ---------------------------------------------------------------------

def test_load_workflow_function(tmp_path):
    path = tmp_path / "ci_workflow.py"
    path.write_text(
        textwrap.dedent(
            """
            from matrixci.dsl import build, pl

            def pipeline():
                return pl(build().axis("os", "linux", "osx").script("make"))
            """
        )
    )

    declaration = load_workflow(path)
    assert [a.name for a in declaration.axes] == ["os"]


def test_load_workflow_mapping_constant(tmp_path):
    path = tmp_path / "ci_workflow.py"
    path.write_text('PIPELINE = {"matrix": {"os": ["linux"]}, "script": "make"}\n')

    assert load_workflow(path).hooks.script == ("make",)


@pytest.mark.parametrize(
    "source",
    [
        "X = 1\n",
        "PIPELINE = [1, 2]\n",
        'PIPELINE = {"script": "make", "bogus": True}\n',
    ],
)
def test_load_workflow_rejects_bad_files(tmp_path, source):
    path = tmp_path / "ci_workflow.py"
    path.write_text(source)

    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_load_workflow_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_workflow(tmp_path / "nope.py")
