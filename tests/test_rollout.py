"""Flag evaluation: precedence, bucketing and fail-open behaviour."""
import uuid
from datetime import timedelta

import pytest

from trustgate.core.clock import utcnow
from trustgate.core.enums import DecisionSource, RuleType
from trustgate.core.errors import NotFoundError
from trustgate.schemas.feature_flag import Rule
from trustgate.services.decision_facade import TrustDecisionFacade
from trustgate.services.rollout import rule_matches, tenant_bucket
from tests.conftest import make_flag, new_org


def _rule(**kwargs) -> Rule:
    data = {"id": uuid.uuid4(), "flag_id": uuid.uuid4(), "type": RuleType.PERCENTAGE}
    data.update(kwargs)
    return Rule(**data)


# ── Bucketing ──

def test_bucket_is_deterministic_and_in_range():
    org = new_org()
    first = tenant_bucket(org, "new_dashboard")
    assert first == tenant_bucket(org, "new_dashboard")
    assert 0 <= first < 100


def test_bucket_depends_on_flag_key():
    orgs = [new_org() for _ in range(50)]
    a = [tenant_bucket(o, "flag_a") for o in orgs]
    b = [tenant_bucket(o, "flag_b") for o in orgs]
    assert a != b


def test_percentage_extremes():
    orgs = [new_org() for _ in range(200)]
    assert not any(rule_matches(_rule(percentage=0), o, "f") for o in orgs)
    assert all(rule_matches(_rule(percentage=100), o, "f") for o in orgs)


def test_raising_percentage_only_adds_organizations():
    orgs = [new_org() for _ in range(500)]
    previous = set()
    for pct in (5, 10, 25, 50, 75, 100):
        current = {o for o in orgs if rule_matches(_rule(percentage=pct), o, "checkout_v2")}
        assert previous <= current
        previous = current
    assert previous == set(orgs)


def test_percentage_rollout_is_roughly_uniform():
    orgs = [new_org() for _ in range(2000)]
    enabled = sum(rule_matches(_rule(percentage=30), o, "checkout_v2") for o in orgs)
    assert 450 < enabled < 750


def test_org_list_rule_matches_members_only():
    a, b = new_org(), new_org()
    rule = _rule(type=RuleType.ORG_LIST, organization_ids=[str(a)])
    assert rule_matches(rule, a, "f") is True
    assert rule_matches(rule, b, "f") is False


# ── Resolution order ──

def test_unknown_flag_raises_not_found(facade: TrustDecisionFacade):
    with pytest.raises(NotFoundError):
        facade.evaluate_flag("does_not_exist", new_org())


def test_default_when_nothing_matches(facade: TrustDecisionFacade):
    make_flag(facade, "beta_reports", enabled=True)
    decision = facade.evaluate_flag("beta_reports", new_org())
    assert decision.enabled is True
    assert decision.source is DecisionSource.DEFAULT
    assert decision.rule_id is None
    assert decision.degraded is False


def test_override_beats_matching_rule(facade: TrustDecisionFacade):
    flag = make_flag(facade)
    org = new_org()
    facade.upsert_rule(flag.id, "global", priority=1)
    facade.set_override(flag.id, org, False, "customer asked to opt out")

    decision = facade.evaluate_flag(flag.key, org)
    assert decision.enabled is False
    assert decision.source is DecisionSource.OVERRIDE

    other = facade.evaluate_flag(flag.key, new_org())
    assert other.enabled is True
    assert other.source is DecisionSource.RULE


def test_lowest_priority_rule_wins(facade: TrustDecisionFacade):
    flag = make_flag(facade)
    org = new_org()
    late = facade.upsert_rule(flag.id, "global", priority=50)
    early = facade.upsert_rule(flag.id, "org_list", organization_ids=[org], priority=10)

    decision = facade.evaluate_flag(flag.key, org)
    assert decision.source is DecisionSource.RULE
    assert decision.rule_id == early.id

    outsider = facade.evaluate_flag(flag.key, new_org())
    assert outsider.rule_id == late.id


def test_equal_priority_breaks_ties_by_rule_id(facade: TrustDecisionFacade):
    flag = make_flag(facade)
    first = facade.upsert_rule(flag.id, "global", priority=10)
    second = facade.upsert_rule(flag.id, "global", priority=10)

    decision = facade.evaluate_flag(flag.key, new_org())
    assert decision.rule_id == min(first.id, second.id)


def test_disabled_rules_are_skipped(facade: TrustDecisionFacade):
    flag = make_flag(facade)
    facade.upsert_rule(flag.id, "global", priority=1, enabled=False)

    decision = facade.evaluate_flag(flag.key, new_org())
    assert decision.source is DecisionSource.DEFAULT
    assert decision.enabled is False


def test_expired_override_is_ignored(facade: TrustDecisionFacade):
    flag = make_flag(facade, enabled=False)
    org = new_org()
    expires_at = utcnow() + timedelta(hours=1)
    facade.set_override(flag.id, org, True, "trial week", expires_at)

    assert facade.evaluate_flag(flag.key, org).source is DecisionSource.OVERRIDE

    before = facade.evaluate_flag(flag.key, org, now=expires_at - timedelta(seconds=1))
    assert before.enabled is True

    at_expiry = facade.evaluate_flag(flag.key, org, now=expires_at)
    assert at_expiry.source is DecisionSource.DEFAULT
    assert at_expiry.enabled is False


def test_evaluate_all_covers_every_flag(facade: TrustDecisionFacade):
    on = make_flag(facade, "flag_on", enabled=True)
    make_flag(facade, "flag_off", enabled=False)
    org = new_org()
    facade.set_override(on.id, org, False, "support ticket 4411")

    decisions = facade.evaluate_all(org)
    assert set(decisions) == {"flag_on", "flag_off"}
    assert decisions["flag_on"].source is DecisionSource.OVERRIDE
    assert decisions["flag_on"].enabled is False
    assert decisions["flag_off"].enabled is False


def test_rule_change_is_visible_after_write(facade: TrustDecisionFacade):
    flag = make_flag(facade)
    org = new_org()
    assert facade.evaluate_flag(flag.key, org).enabled is False  # primes the cache

    rule = facade.upsert_rule(flag.id, "percentage", percentage=0)
    assert facade.evaluate_flag(flag.key, org).enabled is False

    facade.upsert_rule(flag.id, "percentage", percentage=100, rule_id=rule.id)
    decision = facade.evaluate_flag(flag.key, org)
    assert decision.enabled is True
    assert decision.rule_id == rule.id


# ── Fail-open ──

def test_store_outage_serves_cached_default_degraded(facade, cache, broken_session_factory):
    make_flag(facade, "cached_flag", enabled=True)
    facade.evaluate_flag("cached_flag", new_org())  # flag and rules now cached

    offline = TrustDecisionFacade(broken_session_factory, cache=cache)
    decision = offline.evaluate_flag("cached_flag", new_org())
    assert decision.degraded is True
    assert decision.enabled is True
    assert decision.source is DecisionSource.DEFAULT


def test_store_outage_without_cache_is_disabled(broken_session_factory):
    offline = TrustDecisionFacade(broken_session_factory)
    decision = offline.evaluate_flag("anything", new_org())
    assert decision.degraded is True
    assert decision.enabled is False


def test_store_outage_evaluate_all_returns_empty(broken_session_factory):
    offline = TrustDecisionFacade(broken_session_factory)
    assert offline.evaluate_all(new_org()) == {}
