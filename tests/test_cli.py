from __future__ import annotations

import json
import os
import textwrap

import pytest
from click.testing import CliRunner

from matrixci.cli import cli, find_workflow_files

pytestmark = [
    pytest.mark.skipif(os.name != "posix", reason="workflows use a POSIX shell"),
    pytest.mark.usefixtures("clean_env"),
]


def write_workflow(path, script, *, allow=None, name="matrixci_workflow.py", extra=""):
    jobs = {"allow_failures": [allow]} if allow else {}
    path.joinpath(name).write_text(
        textwrap.dedent(
            f"""
            PIPELINE = {{
                "matrix": {{"flavor": ["a", "b"]}},
                "script": {script!r},
                "jobs": {jobs!r},
            }}
            {extra}
            """
        )
    )


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_run_success(workdir):
    write_workflow(workdir, "echo building $MATRIXCI_FLAVOR")

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 0, result.output
    assert "PIPELINE: SUCCESS" in result.output
    assert "flavor=a" in result.output


def test_run_failure_shows_exit_code_and_output(workdir):
    write_workflow(workdir, 'echo "flavor $MATRIXCI_FLAVOR"; test "$MATRIXCI_FLAVOR" != b || exit 3')

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 1
    assert "Exit code: 3" in result.output
    assert "flavor b" in result.output
    assert "PIPELINE: FAILURE" in result.output


def test_run_allowed_failure(workdir):
    write_workflow(workdir, 'test "$MATRIXCI_FLAVOR" != b', allow={"flavor": "b"})

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 0, result.output
    assert "(allowed failure)" in result.output


def test_run_writes_report(workdir):
    write_workflow(workdir, "true")

    result = CliRunner().invoke(cli, ["run", "--report", "report.json", "--workers", "2"])

    assert result.exit_code == 0, result.output
    report = json.loads((workdir / "report.json").read_text())
    assert report["status"] == "success"
    assert len(report["stages"]["test"]["jobs"]) == 2


def test_run_timeout(workdir):
    write_workflow(workdir, "sleep 10")

    result = CliRunner().invoke(cli, ["run", "--timeout", "0.3"])

    assert result.exit_code == 1
    assert "TIMEOUT" in result.output


def test_run_uses_cache_dir_option(workdir):
    write_workflow(workdir, "mkdir -p out && echo x > out/file")
    wf = workdir / "matrixci_workflow.py"
    wf.write_text(wf.read_text().replace('"jobs"', '"cache": {"directories": ["out"]},\n    "jobs"'))

    result = CliRunner().invoke(cli, ["run", "--cache-dir", "ci-cache"])

    assert result.exit_code == 0, result.output
    assert len(list((workdir / "ci-cache").glob("*.tar.gz"))) == 2


def test_plan_prints_jobs_without_running(workdir):
    write_workflow(workdir, "touch ran")

    result = CliRunner().invoke(cli, ["plan"])

    assert result.exit_code == 0, result.output
    assert "Stage 1: test" in result.output
    assert "1.1" in result.output and "1.2" in result.output
    assert not (workdir / "ran").exists()


def test_invalid_workflow_exits_1(workdir):
    (workdir / "matrixci_workflow.py").write_text('PIPELINE = {"script": "true", "matrix": {"os": []}}\n')

    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 1
    assert "Invalid pipeline" in result.output


def test_missing_workflow_exits_1(workdir):
    result = CliRunner().invoke(cli, ["run"])

    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_explicit_choice(workdir):
    write_workflow(workdir, "true")
    write_workflow(workdir, "false", name="other_workflow.py")

    assert CliRunner().invoke(cli, ["run"]).exit_code == 1
    result = CliRunner().invoke(cli, ["run", "--workflow", "other_workflow"])
    assert result.exit_code == 1
    assert "PIPELINE: FAILURE" in result.output


def test_find_workflow_files_lists_all_candidates(workdir):
    write_workflow(workdir, "true")
    write_workflow(workdir, "true", name="a_workflow.py")

    assert [p.name for p in find_workflow_files(workdir)] == ["a_workflow.py", "matrixci_workflow.py"]
