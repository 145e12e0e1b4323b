# matrixci_workflow.py
# Build matrix for the project: every OS x toolchain channel builds and tests,
# nightly is allowed to fail, and clippy runs once in its own stage
# (undeclared, so it runs after the declared ones).
from __future__ import annotations
from matrixci.dsl import build, cache, pl


def pipeline():
    return pl(
        build("build and test")
        .axis("os", "linux", "osx")
        .axis("rust", "stable", "beta", "nightly")
        .stages("pre-build checks", "build and test", "lints")
        .with_env(RUSTFLAGS="-C link-dead-code")
        .with_cache("cargo", "ccache")
        .script("./ci/travis_test.sh")
        .after_success("./ci/mk_coverage.sh")
        .allow_failure(rust="nightly")
        .fast_finish()
        .include(
            stage="static analysis",
            name="Clippy",
            rust="stable",
            before_script="rustup component add clippy",
            script="cargo clippy -- -D clippy::all",
            after_success=[],
            cache=cache("cargo"),
        )
    )
