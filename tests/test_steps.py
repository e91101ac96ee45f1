import threading

import pytest

from mergegate.environment import Environment
from mergegate.model import Step
from mergegate.steps import StepRunner, run_step


@pytest.fixture
def env(tmp_path, source_tree):
    environment = Environment.create(tmp_path / "work", "job", source_tree, {"FROM_WORKFLOW": "wf"})
    yield environment
    environment.teardown()


def test_success_captures_output(env):
    res = run_step(Step(name="hello", run="echo hello; echo oops >&2"), env)
    assert res.ok
    assert res.exit_code == 0
    assert "hello" in res.output
    assert "oops" in res.output


def test_non_zero_exit_is_a_failure(env):
    res = run_step(Step(name="boom", run="exit 3"), env)
    assert not res.ok
    assert res.exit_code == 3
    assert not res.timed_out


def test_timeout_kills_the_step(env):
    res = run_step(Step(name="hang", run="sleep 30"), env, timeout=0.5)
    assert not res.ok
    assert res.timed_out
    assert res.duration < 10


def test_step_timeout_overrides_runner_default(env):
    runner = StepRunner(default_timeout=60)
    res = runner.run(Step(name="hang", run="sleep 30", timeout=0.5), env)
    assert res.timed_out


def test_cancel_terminates_running_step(env):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        res = StepRunner().run(Step(name="hang", run="sleep 30"), env, cancel=cancel)
    finally:
        timer.cancel()
    assert res.cancelled
    assert not res.timed_out
    assert not res.ok


def test_already_cancelled_step_does_not_start(env, tmp_path):
    cancel = threading.Event()
    cancel.set()
    marker = tmp_path / "ran"
    res = StepRunner().run(Step(name="x", run=f"touch {marker}"), env, cancel=cancel)
    assert res.cancelled
    assert not marker.exists()


def test_environment_changes_are_visible_to_later_steps(env):
    runner = StepRunner()
    assert runner.run(Step(name="write", run="mkdir -p out && echo built > out/a.txt"), env).ok
    res = runner.run(Step(name="read", run="cat out/a.txt"), env)
    assert res.ok
    assert "built" in res.output


def test_steps_run_in_checked_out_workspace(env):
    res = run_step(Step(name="ls", run="cat main.txt"), env)
    assert res.ok
    assert "hello" in res.output


def test_private_home_and_env_vars(env):
    res = run_step(
        Step(name="env", run='echo "$HOME|$FROM_WORKFLOW|$FROM_STEP|$CI"', env={"FROM_STEP": "step"}),
        env,
    )
    assert res.ok
    assert res.output.strip() == f"{env.home}|wf|step|true"


def test_step_cwd(env):
    (env.workspace / "sub").mkdir()
    res = run_step(Step(name="pwd", run="pwd", cwd="sub"), env)
    assert res.output.strip().endswith("/sub")


def test_missing_cwd_fails_the_step(env):
    res = run_step(Step(name="pwd", run="pwd", cwd="nope"), env)
    assert not res.ok
    assert res.exit_code == 127


def test_output_tail_is_bounded(env):
    res = StepRunner(output_tail=100).run(Step(name="spam", run="yes x | head -n 1000"), env)
    assert res.ok
    assert len(res.output) == 100
