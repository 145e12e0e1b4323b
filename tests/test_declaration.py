from __future__ import annotations

import pytest

from matrixci.declaration import CACHE_PRESETS, from_mapping
from matrixci.errors import ConfigurationError
from matrixci.matrix import plan_pipeline


def travis_mapping():
    # what a YAML loader hands over for a typical rust build matrix
    return {
        "matrix": {"os": ["linux", "osx"], "rust": ["stable", "beta", "nightly"]},
        "stage": "build and test",
        "cache": {"cargo": True, "directories": ["$HOME/.ccache"]},
        "env": {"RUSTFLAGS": "-C link-dead-code"},
        "script": "./ci/travis_test.sh",
        "after_success": "./ci/mk_coverage.sh",
        "jobs": {
            "allow_failures": [{"rust": "nightly"}],
            "fast_finish": True,
            "include": [
                {
                    "stage": "static analysis",
                    "name": "Clippy",
                    "rust": "stable",
                    "cache": {"cargo": True},
                    "before_script": "rustup component add clippy",
                    "script": "cargo clippy -- -D clippy::all",
                    "after_success": None,
                }
            ],
        },
        "stages": ["pre-build checks", "build and test", "lints"],
    }


def test_mapping_builds_declaration():
    d = from_mapping(travis_mapping())

    assert [(a.name, a.values) for a in d.axes] == [
        ("os", ("linux", "osx")),
        ("rust", ("stable", "beta", "nightly")),
    ]
    assert d.matrix_stage == "build and test"
    assert d.hooks.script == ("./ci/travis_test.sh",)
    assert d.hooks.after_success == ("./ci/mk_coverage.sh",)
    assert d.env == (("RUSTFLAGS", "-C link-dead-code"),)
    assert d.allow_failures == ((("rust", "nightly"),),)
    assert d.fast_finish
    assert [s.name for s in d.stages] == ["pre-build checks", "build and test", "lints"]


def test_cache_presets_merge_with_directories():
    d = from_mapping(travis_mapping())
    cargo_dirs, cargo_inputs = CACHE_PRESETS["cargo"]

    assert d.cache.directories == cargo_dirs + ("$HOME/.ccache",)
    assert d.cache.inputs == cargo_inputs


def test_include_keys_that_are_not_job_fields_are_axis_values():
    rule = from_mapping(travis_mapping()).include[0]

    assert rule.values == (("rust", "stable"),)
    assert rule.stage == "static analysis"
    assert rule.name == "Clippy"
    assert rule.before_script == ("rustup component add clippy",)


def test_empty_hook_in_include_clears_the_phase():
    rule = from_mapping(travis_mapping()).include[0]

    # `after_success:` with no value
    assert rule.after_success == ()
    # not mentioned at all: inherit
    assert rule.after_failure is None


def test_mapping_plan_matches_builder_plan():
    plan = plan_pipeline(from_mapping(travis_mapping()))

    assert [s.name for s in plan.stages] == ["build and test", "static analysis"]
    assert len(plan.stages[0].jobs) == 6
    assert plan.stages[0].fast_finish
    assert plan.stages[1].jobs[0].hooks.after_success == ()


def test_numbers_are_coerced_to_strings():
    d = from_mapping({"matrix": {"python": [3.11, 3.12], "node": 20}, "script": "make"})

    assert d.axes[0].values == ("3.11", "3.12")
    assert d.axes[1].values == ("20",)


def test_cache_false_disables_cache():
    data = travis_mapping()
    data["jobs"]["include"][0]["cache"] = False

    rule = from_mapping(data).include[0]
    assert rule.cache is not None and not rule.cache.enabled


def test_stage_objects():
    d = from_mapping(
        {
            "script": "make",
            "stages": ["test", {"name": "deploy", "allow_failure": True, "fast_finish": True}],
        }
    )

    deploy = d.stages[1]
    assert deploy.allow_failure and deploy.fast_finish


def test_extensible_axis():
    d = from_mapping(
        {
            "matrix": {"rust": ["stable"]},
            "extensible": ["rust"],
            "script": "cargo test",
            "jobs": {"include": [{"rust": "1.70.0"}]},
        }
    )
    plan = plan_pipeline(d)

    assert [j.values["rust"] for j in plan.jobs] == ["stable", "1.70.0"]


@pytest.mark.parametrize(
    "data",
    [
        {"script": "make", "language": "rust"},
        {"script": "make", "cache": {"gradle": True}},
        {"script": "make", "jobs": {"include": "not a list"}},
        {"script": "make", "timeout": "soon"},
        {"matrix": {"os": ["linux"]}, "extensible": ["rust"]},
    ],
)
def test_invalid_mappings_raise_configuration_error(data):
    with pytest.raises(ConfigurationError):
        from_mapping(data)


def test_validation_error_details_name_the_field():
    with pytest.raises(ConfigurationError) as exc:
        from_mapping({"script": "make", "timeout": "soon"})

    assert "timeout" in exc.value.details["errors"]
    assert str(exc.value).startswith("ConfigurationError: invalid pipeline declaration")
