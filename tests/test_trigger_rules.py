import pytest

from cikit.errors import DefinitionError
from ci_pipeline.framework.trigger import TriggerEvent, TriggerRules


def _rules(raw) -> TriggerRules:
    return TriggerRules.from_definition(raw, path="triggers")


def test_no_rules_match_every_event():
    rules = _rules(None)
    assert rules.matches(TriggerEvent("push", "abc123", ref="feature/x"))
    assert rules.matches(TriggerEvent("pull_request", "abc123"))


def test_branch_filters_use_glob_patterns():
    rules = _rules({"push": {"branches": ["main", "rhcos-*"]}})

    assert rules.matches(TriggerEvent("push", "abc", ref="refs/heads/main"))
    assert rules.matches(TriggerEvent("push", "abc", ref="rhcos-4.16"))
    assert not rules.matches(TriggerEvent("push", "abc", ref="feature/x"))
    assert not rules.matches(TriggerEvent("push", "abc"))
    assert not rules.matches(TriggerEvent("pull_request", "abc", ref="main"))


def test_kind_without_branches_matches_any_branch():
    rules = _rules(["push", "pull_request"])
    assert rules.matches(TriggerEvent("pull_request", "abc", ref="refs/pull/42"))
    assert rules.describe() == {"push": [], "pull_request": []}


def test_manual_events_always_match():
    rules = _rules({"push": {"branches": ["main"]}})
    assert rules.matches(TriggerEvent("manual", "abc"))


@pytest.mark.parametrize(
    "raw",
    [
        {"schedule": None},
        {"push": ["main"]},
        {"push": {"tags": ["v*"]}},
        {"push": {"branches": 5}},
        42,
    ],
)
def test_invalid_trigger_rules_raise(raw):
    with pytest.raises(DefinitionError):
        _rules(raw)


def test_trigger_event_validation():
    with pytest.raises(ValueError, match=r"Invalid trigger kind"):
        TriggerEvent("cron", "abc")
    with pytest.raises(ValueError, match=r"revision"):
        TriggerEvent("push", "  ")
    event = TriggerEvent("push", " abc ", ref="  ")
    assert event.revision == "abc"
    assert event.ref is None
    assert event.to_dict() == {"kind": "push", "revision": "abc", "ref": None}
