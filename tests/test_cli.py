import pytest
from click.testing import CliRunner

from mergegate.cli import cli

WORKFLOW = """
name: ci
on:
  push:
    branches: [master, release*]
  pull_request:
    branches: [master]
jobs:
  check:
    steps:
      - run: "true"
  fmt:
    name: Run fmt
    steps:
      - name: Cargo fmt
        run: echo "needs formatting"; exit 1
  docs:
    steps:
      - run: "true"
  tests:
    cache:
      paths: [target]
      lock-files: [deps.lock]
    steps:
      - run: mkdir -p target && touch target/built
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_args(tmp_path, source_tree, write_yaml):
    wf_path = write_yaml(WORKFLOW)
    base = ["--cache-dir", str(tmp_path / "cache"), "--work-dir", str(tmp_path / "work")]
    return base, wf_path, source_tree


def test_run_failing_job_exits_non_zero(runner, cli_args):
    base, wf_path, src = cli_args
    result = runner.invoke(
        cli,
        base + ["run", "--workflow", str(wf_path), "--branch", "master", "--source-root", str(src)],
    )
    assert result.exit_code == 1
    assert "fmt: failed at step 'Cargo fmt'" in result.output
    assert "Verdict: failure" in result.output


def test_run_single_green_job(runner, cli_args):
    base, wf_path, src = cli_args
    result = runner.invoke(
        cli,
        base + ["run", "--workflow", str(wf_path), "--branch", "master", "--source-root", str(src), "--job", "tests"],
    )
    assert result.exit_code == 0, result.output
    assert "CACHE: saved" in result.output


def test_uncovered_pull_request_is_a_noop(runner, cli_args):
    base, wf_path, src = cli_args
    result = runner.invoke(
        cli,
        base
        + [
            "run", "--workflow", str(wf_path), "--event", "pull_request",
            "--branch", "develop", "--source-branch", "master", "--source-root", str(src),
        ],
    )
    assert result.exit_code == 0
    assert "no-op" in result.output


def test_report_file(runner, cli_args, tmp_path):
    base, wf_path, src = cli_args
    report = tmp_path / "out" / "report.txt"
    result = runner.invoke(
        cli,
        base + [
            "run", "--workflow", str(wf_path), "--branch", "release-2",
            "--source-root", str(src), "--report", str(report),
        ],
    )
    assert result.exit_code == 1
    text = report.read_text()
    assert "Failing jobs (1):" in text
    assert "fmt" in text


def test_invalid_workflow_exits_with_config_error(runner, cli_args, write_yaml):
    base, _, src = cli_args
    bad = write_yaml("on: push\njobs:\n  a:\n    needs: [b]\n    steps:\n      - run: 'true'\n", name="bad.yml")
    result = runner.invoke(cli, base + ["run", "--workflow", str(bad), "--branch", "master"])
    assert result.exit_code == 2
    assert "Invalid workflow" in result.output


def test_unknown_job_selection_is_a_config_error(runner, cli_args):
    base, wf_path, src = cli_args
    result = runner.invoke(cli, base + ["run", "--workflow", str(wf_path), "--branch", "master", "--job", "lint"])
    assert result.exit_code == 2


def test_missing_workflow_file(runner, cli_args):
    base, _, _ = cli_args
    result = runner.invoke(cli, base + ["run", "--workflow", "nope.yml", "--branch", "master"])
    assert result.exit_code == 2
    assert "Workflow file not found" in result.output


def test_plan_lists_selected_and_skipped(runner, cli_args, write_yaml):
    base, _, _ = cli_args
    wf_path = write_yaml(
        "on: {push: {branches: [master]}}\n"
        "jobs:\n"
        "  a: {steps: [{run: 'true'}]}\n"
        "  b: {on: {push: {branches: [nightly]}}, steps: [{run: 'true'}]}\n",
        name="plan.yml",
    )
    result = runner.invoke(cli, base + ["plan", "--workflow", str(wf_path), "--branch", "master"])
    assert result.exit_code == 0
    assert "✓ a" in result.output
    assert "⏭ b" in result.output


def test_cache_list_and_prune(runner, cli_args):
    base, wf_path, src = cli_args
    result = runner.invoke(cli, base + ["cache", "list"])
    assert "cache is empty" in result.output

    runner.invoke(
        cli,
        base + ["run", "--workflow", str(wf_path), "--branch", "master", "--source-root", str(src), "--job", "tests"],
    )
    result = runner.invoke(cli, base + ["cache", "list"])
    assert "tests" in result.output

    result = runner.invoke(cli, base + ["cache", "prune", "--keep", "0"])
    assert "evicted 1 entry" in result.output


def test_python_workflow_with_empty_job_exits_with_config_error(runner, cli_args, tmp_path):
    base, _, src = cli_args
    bad = tmp_path / "empty_workflow.py"
    bad.write_text("from mergegate.dsl import wf, job\ndef workflow():\n    return wf('x', job('empty'))\n")
    result = runner.invoke(cli, base + ["run", "--workflow", str(bad), "--branch", "master", "--source-root", str(src)])
    assert result.exit_code == 2
    assert "must have at least one step" in result.output
