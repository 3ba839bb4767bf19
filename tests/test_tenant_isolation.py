"""
Tenant Isolation Tests
Every read is scoped to the organization the repository was built for.
"""
import uuid
from types import SimpleNamespace

import pytest

from trustgate.core.enums import RuleType
from trustgate.core.errors import TenantScopeViolation
from trustgate.crud.tenant_repository import OrgContext, TenantRepository
from tests.conftest import CHROME_UA, issue_session, make_flag, new_org


def test_repository_requires_org_context(session_factory):
    db = session_factory()
    try:
        with pytest.raises(TypeError):
            TenantRepository(db, uuid.uuid4())
    finally:
        db.close()


def test_org_context_coerces_strings():
    org = uuid.uuid4()
    ctx = OrgContext(organization_id=str(org), user_id=str(org))
    assert ctx.organization_id == org
    assert ctx.user_id == org


def test_foreign_rows_raise_instead_of_being_dropped(session_factory):
    db = session_factory()
    try:
        repo = TenantRepository(db, OrgContext(new_org()))
        foreign = SimpleNamespace(organization_id=new_org())
        with pytest.raises(TenantScopeViolation):
            repo._check_rows([foreign], "list_things")
    finally:
        db.close()


def test_org_list_rules_only_reveal_the_callers_membership(facade):
    flag = make_flag(facade)
    a, b, c = new_org(), new_org(), new_org()
    facade.upsert_rule(flag.id, "org_list", organization_ids=[a, b])

    with facade.repository(a) as repo:
        [rule] = repo.list_rules(flag.id)
        assert rule.type is RuleType.ORG_LIST
        assert rule.organization_ids == frozenset({a})

    with facade.repository(c) as repo:
        [rule] = repo.list_rules(flag.id)
        assert rule.organization_ids == frozenset()


def test_binding_of_another_organization_is_rejected(facade):
    owner = new_org()
    sid, _ = issue_session(facade, owner)

    with facade.repository(new_org()) as repo:
        with pytest.raises(TenantScopeViolation):
            repo.get_binding(sid)

    with facade.repository(owner) as repo:
        assert repo.get_binding(sid).organization_id == owner


def test_overrides_are_invisible_across_organizations(facade):
    flag = make_flag(facade)
    a, b = new_org(), new_org()
    facade.set_override(flag.id, a, True, "pilot")

    with facade.repository(b) as repo:
        assert repo.get_override(flag.id) is None
    with facade.repository(a) as repo:
        assert repo.get_override(flag.id).organization_id == a


def test_hijack_attempts_are_scoped(facade):
    a, b = new_org(), new_org()
    sid, user = issue_session(facade, a)
    facade.verify_request(sid, a, user, "10.0.0.1", CHROME_UA)
    facade.verify_request(sid, a, user, "10.0.0.99", CHROME_UA)

    assert len(facade.hijack_attempts(a)) == 1
    assert facade.hijack_attempts(b) == []
