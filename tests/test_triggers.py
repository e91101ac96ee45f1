import pytest

from mergegate.dsl import job, on_pull_request, on_push, sh, wf
from mergegate.errors import ConfigurationError
from mergegate.model import BranchPattern, Event, EventKind, PatternKind, TriggerRule
from mergegate.triggers import explain, match_jobs, rule_matches


def _push(branch):
    return Event(kind=EventKind.PUSH, branch=branch)


def _pr(target, source="feature/x"):
    return Event(kind=EventKind.PULL_REQUEST, branch=target, source_branch=source)


@pytest.fixture
def workflow():
    return wf(
        "ci",
        job("check", sh("check", "true")),
        job("fmt", sh("fmt", "true")),
        job("nightly", sh("nightly", "true"), on=[on_push("nightly")]),
        on=[on_push("master", "release*"), on_pull_request("master")],
    )


def test_prefix_pattern_matches_release_branch():
    rule = TriggerRule.of("push", "release*")
    assert rule_matches(rule, _push("release-1.2"))
    assert not rule_matches(TriggerRule.of("push", "master"), _push("release-1.2"))


def test_exact_pattern_is_not_a_prefix():
    rule = TriggerRule.of("push", "master")
    assert rule_matches(rule, _push("master"))
    assert not rule_matches(rule, _push("master-old"))


def test_pull_request_matches_on_target_branch_only():
    rule = TriggerRule.of("pull_request", "master")
    assert rule_matches(rule, _pr("master", source="anything/at-all"))
    assert rule_matches(rule, _pr("master", source="master"))
    assert not rule_matches(rule, _pr("develop", source="master"))


def test_event_kind_must_match():
    assert not rule_matches(TriggerRule.of("pull_request", "master"), _push("master"))
    assert not rule_matches(TriggerRule.of("push", "master"), _pr("master"))


def test_match_jobs_keeps_workflow_order(workflow):
    names = [j.name for j in match_jobs(_push("release-1.2"), workflow)]
    assert names == ["check", "fmt"]

    names = [j.name for j in match_jobs(_push("nightly"), workflow)]
    assert names == ["nightly"]


def test_uncovered_pull_request_selects_nothing(workflow):
    assert match_jobs(_pr("develop"), workflow) == []


def test_matching_is_deterministic(workflow):
    event = _pr("master")
    first = [j.name for j in match_jobs(event, workflow)]
    for _ in range(5):
        assert [j.name for j in match_jobs(event, workflow)] == first


def test_branchless_event_matches_nothing(workflow):
    assert match_jobs(Event(kind=EventKind.PUSH, branch=None), workflow) == []


def test_star_alone_matches_every_branch():
    p = BranchPattern.parse("*")
    assert p.kind is PatternKind.PREFIX
    assert p.matches("anything")
    assert p.matches("")


@pytest.mark.parametrize("raw", ["rel*ase", "feature/?", "[ab]", "**", ""])
def test_unsupported_patterns_are_rejected(raw):
    with pytest.raises(ConfigurationError):
        BranchPattern.parse(raw)


def test_explain_names_the_matching_pattern(workflow):
    check = workflow.job("check")
    assert "release*" in explain(check, _push("release-7"))
    assert "no rule matched" in explain(check, _push("topic"))


def test_event_from_push_webhook():
    e = Event.from_webhook("push", {"ref": "refs/heads/release-1.2", "after": "abc"})
    assert e.kind is EventKind.PUSH
    assert e.branch == "release-1.2"
    assert e.sha == "abc"


def test_tag_push_has_no_branch():
    e = Event.from_webhook("push", {"ref": "refs/tags/v1.0"})
    assert e.branch is None


def test_event_from_pull_request_webhook():
    payload = {"pull_request": {"base": {"ref": "master"}, "head": {"ref": "fix/typo", "sha": "def"}}}
    e = Event.from_webhook("pull_request", payload)
    assert e.branch == "master"
    assert e.source_branch == "fix/typo"


def test_unknown_webhook_kind():
    with pytest.raises(ValueError):
        Event.from_webhook("issues", {})
