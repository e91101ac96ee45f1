from pathlib import Path

import pytest

from mergegate.errors import ConfigurationError
from mergegate.loader import load_workflow, parse_workflow
from mergegate.model import Event, EventKind
from mergegate.triggers import match_jobs

EXAMPLE = Path(__file__).resolve().parents[1] / "examples" / "rust_ci.yml"


@pytest.fixture
def rust_ci():
    return load_workflow(EXAMPLE)


def test_example_workflow_jobs(rust_ci):
    assert rust_ci.name == "Rust"
    assert [j.name for j in rust_ci.jobs] == ["check", "fmt", "docs", "tests"]
    assert rust_ci.job("fmt").title == "Run rustfmt"
    assert rust_ci.env == {"CARGO_TERM_COLOR": "always"}


def test_example_workflow_triggers(rust_ci):
    push_release = Event(EventKind.PUSH, "release-1.2")
    pr_master = Event(EventKind.PULL_REQUEST, "master", source_branch="some/feature")
    pr_release = Event(EventKind.PULL_REQUEST, "release-1.2")

    assert len(match_jobs(push_release, rust_ci)) == 4
    assert len(match_jobs(pr_master, rust_ci)) == 4
    assert match_jobs(pr_release, rust_ci) == []


def test_actions_compile_to_shell_steps(rust_ci):
    fmt = rust_ci.job("fmt")
    runs = [s.run for s in fmt.steps]
    assert runs == [
        "rustup toolchain install stable --profile minimal --component clippy --component rustfmt",
        "rustup override set stable",
        "cargo fmt --all -- --check",
    ]

    docs = rust_ci.job("docs")
    assert docs.steps[-1].run.startswith('RUSTDOCFLAGS="--deny broken_intra_doc_links" cargo doc')


def test_rust_cache_becomes_cache_policy(rust_ci):
    policy = rust_ci.job("check").cache
    assert policy is not None
    assert "target" in policy.paths
    assert "~/.cargo/registry" in policy.paths
    assert "Cargo.lock" in policy.lock_files
    assert policy.toolchain == "rust-stable"


def test_job_timeout_minutes_applies_to_each_step(rust_ci):
    assert all(s.timeout == 1800 for s in rust_ci.job("tests").steps)
    assert all(s.timeout is None for s in rust_ci.job("check").steps)


def test_python_workflow(tmp_path):
    p = tmp_path / "py_workflow.py"
    p.write_text(
        "from mergegate.dsl import wf, job, sh, on_push\n"
        "def workflow():\n"
        "    return wf('py', job('a', sh('x', 'true')), on=[on_push('main')])\n"
    )
    workflow = load_workflow(p)
    assert workflow.name == "py"
    assert workflow.source == p.resolve()
    assert [j.name for j in match_jobs(Event(EventKind.PUSH, "main"), workflow)] == ["a"]


def test_python_workflow_must_return_a_workflow(tmp_path):
    p = tmp_path / "bad_workflow.py"
    p.write_text("WORKFLOW = 42\n")
    with pytest.raises(ConfigurationError):
        load_workflow(p)


def test_per_job_trigger_override():
    workflow = parse_workflow(
        {
            "on": {"push": {"branches": ["master"]}},
            "jobs": {
                "a": {"steps": [{"run": "true"}]},
                "b": {"on": {"push": {"branches": "nightly"}}, "steps": [{"run": "true"}]},
            },
        }
    )
    assert [j.name for j in match_jobs(Event(EventKind.PUSH, "master"), workflow)] == ["a"]
    assert [j.name for j in match_jobs(Event(EventKind.PUSH, "nightly"), workflow)] == ["b"]


def test_trigger_without_branches_matches_any_branch():
    workflow = parse_workflow({"on": ["push"], "jobs": {"a": {"steps": [{"run": "true"}]}}})
    assert match_jobs(Event(EventKind.PUSH, "whatever"), workflow)


def test_explicit_cache_block():
    workflow = parse_workflow(
        {
            "on": "push",
            "jobs": {
                "a": {
                    "cache": {"paths": ["node_modules"], "lock-files": ["package-lock.json"], "toolchain": "node20"},
                    "steps": [{"run": "npm ci"}],
                }
            },
        }
    )
    policy = workflow.job("a").cache
    assert policy.paths == ("node_modules",)
    assert policy.lock_files == ("package-lock.json",)


@pytest.mark.parametrize(
    "doc",
    [
        {"on": "push"},  # no jobs
        {"jobs": {"a": {"steps": [{"run": "true"}]}}},  # no triggers
        {"on": "push", "jobs": {"a": {"steps": []}}},
        {"on": "push", "jobs": {"a": {"steps": [{"run": "true", "uses": "actions/checkout@v4"}]}}},
        {"on": "push", "jobs": {"a": {"steps": [{"name": "nothing"}]}}},
        {"on": "push", "jobs": {"a": {"steps": [{"uses": "someone/unknown@v1"}]}}},
        {"on": "push", "jobs": {"a": {"needs": ["b"], "steps": [{"run": "true"}]}}},
        {"on": "push", "jobs": {"a": {"bogus": 1, "steps": [{"run": "true"}]}}},
        {"on": {"schedule": None}, "jobs": {"a": {"steps": [{"run": "true"}]}}},
        {"on": {"push": {"branches": ["feat*ure"]}}, "jobs": {"a": {"steps": [{"run": "true"}]}}},
        {"on": {"push": {"branches-ignore": ["x"]}}, "jobs": {"a": {"steps": [{"run": "true"}]}}},
        {"on": "push", "jobs": {"a": {"steps": [{"uses": "actions-rs/cargo@v1"}]}}},
        {"on": "push", "jobs": {"a": {"steps": [{"uses": "actions/checkout@v4"}]}}},
        {"on": "push", "jobs": {"a": {"cache": {"paths": ["target"], "lock-files": ["../../outside.lock"]}, "steps": [{"run": "true"}]}}},
        {"on": "push", "jobs": {"a": {"cache": {"paths": ["/var/cache"]}, "steps": [{"run": "true"}]}}},
        {"on": "push", "jobs": {"a": {"cache": {"paths": ["~/../elsewhere"]}, "steps": [{"run": "true"}]}}},
        ["not", "a", "mapping"],
    ],
)
def test_malformed_documents_are_rejected(doc):
    with pytest.raises(ConfigurationError):
        parse_workflow(doc)


def test_invalid_yaml_is_rejected(write_yaml):
    p = write_yaml("on: [push\njobs: {")
    with pytest.raises(ConfigurationError) as exc:
        load_workflow(p)
    assert str(p.resolve()) in str(exc.value)


def test_bare_on_key_parsed_as_boolean(write_yaml):
    p = write_yaml(
        """
        on:
          push:
            branches: [master]
        jobs:
          a:
            steps:
              - run: echo hi
        """
    )
    workflow = load_workflow(p)
    assert match_jobs(Event(EventKind.PUSH, "master"), workflow)


def test_missing_file_and_wrong_suffix(tmp_path):
    with pytest.raises(ConfigurationError):
        load_workflow(tmp_path / "nope.yml")
    other = tmp_path / "ci.toml"
    other.write_text("")
    with pytest.raises(ConfigurationError):
        load_workflow(other)


def test_selecting_an_undefined_job_is_a_configuration_error(rust_ci):
    assert [j.name for j in rust_ci.select(["fmt"]).jobs] == ["fmt"]
    with pytest.raises(ConfigurationError):
        rust_ci.select(["lint"])


def test_duplicate_job_names_are_rejected():
    from mergegate.dsl import job, sh, wf

    with pytest.raises(ConfigurationError):
        wf("dupes", job("a", sh("x", "true")), job("a", sh("y", "true")))


def test_python_workflow_dsl_errors_are_configuration_errors(tmp_path):
    p = tmp_path / "empty_workflow.py"
    p.write_text(
        "from mergegate.dsl import wf, job\n"
        "def workflow():\n"
        "    return wf('x', job('empty'))\n"
    )
    with pytest.raises(ConfigurationError) as exc:
        load_workflow(p)
    assert str(p.resolve()) in str(exc.value)


def test_python_workflow_exception_in_workflow_function(tmp_path):
    p = tmp_path / "broken_workflow.py"
    p.write_text("def workflow():\n    raise RuntimeError('boom')\n")
    with pytest.raises(ConfigurationError) as exc:
        load_workflow(p)
    assert "RuntimeError: boom" in str(exc.value)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lock_files": ["../../../outside.lock"]},
        {"lock_files": ["/etc/passwd"]},
        {"lock_files": ["~/deps.lock"]},
    ],
)
def test_cache_paths_must_stay_inside_the_environment(kwargs):
    from mergegate.dsl import cached

    with pytest.raises(ConfigurationError):
        cached("target", **kwargs)
    with pytest.raises(ConfigurationError):
        cached("../target")


def test_home_relative_cache_paths_are_allowed():
    from mergegate.dsl import cached

    policy = cached("~/.cargo/registry", "crates/a/target", lock_files=["**/Cargo.lock"])
    assert policy.paths == ("~/.cargo/registry", "crates/a/target")


def test_rust_cache_lookup_only_restores_without_saving():
    workflow = parse_workflow(
        {
            "on": "push",
            "jobs": {
                "a": {
                    "steps": [
                        {"uses": "Swatinem/rust-cache@v2", "with": {"lookup-only": True}},
                        {"run": "cargo build"},
                    ]
                }
            },
        }
    )
    policy = workflow.job("a").cache
    assert policy.enabled
    assert not policy.save
