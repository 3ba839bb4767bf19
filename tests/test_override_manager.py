"""Per-organization overrides: validation, upsert semantics and audit coupling."""
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from trustgate.core.clock import utcnow
from trustgate.core.enums import AuditAction, DecisionSource
from trustgate.core.errors import AuditWriteFailure, NotFoundError, ValidationError
from trustgate.models.feature_flag import FlagAuditLog, FlagOverride
from trustgate.schemas.audit import OverrideClearedMetadata, OverrideSetMetadata
from trustgate.services.decision_facade import as_org_context
from tests.conftest import make_flag, new_org


def _override_rows(session_factory, flag_id):
    db = session_factory()
    try:
        return db.query(FlagOverride).filter(FlagOverride.flag_id == flag_id).all()
    finally:
        db.close()


def _audit_rows(session_factory, flag_id, action):
    db = session_factory()
    try:
        return (
            db.query(FlagAuditLog)
            .filter(FlagAuditLog.flag_id == flag_id, FlagAuditLog.action == action)
            .all()
        )
    finally:
        db.close()


@pytest.mark.parametrize("reason", ["", "   ", "x" * 1001])
def test_invalid_reason_is_rejected(facade, session_factory, reason):
    flag = make_flag(facade)
    with pytest.raises(ValidationError):
        facade.set_override(flag.id, new_org(), True, reason)
    assert _override_rows(session_factory, flag.id) == []


def test_reason_at_limit_is_accepted(facade):
    flag = make_flag(facade)
    override = facade.set_override(flag.id, new_org(), True, "x" * 1000)
    assert len(override.reason) == 1000


def test_past_expiry_is_rejected(facade, session_factory):
    flag = make_flag(facade)
    now = utcnow()
    with pytest.raises(ValidationError):
        facade.set_override(flag.id, new_org(), True, "too late", now - timedelta(minutes=1), now=now)
    with pytest.raises(ValidationError):
        facade.set_override(flag.id, new_org(), True, "exactly now", now, now=now)
    assert _override_rows(session_factory, flag.id) == []


def test_unknown_flag_is_not_found(facade):
    with pytest.raises(NotFoundError):
        facade.set_override(uuid.uuid4(), new_org(), True, "no such flag")


def test_second_set_replaces_first(facade, session_factory):
    flag = make_flag(facade)
    org = new_org()
    facade.set_override(flag.id, org, True, "pilot customer")
    latest = facade.set_override(flag.id, org, False, "pilot ended")

    rows = _override_rows(session_factory, flag.id)
    assert len(rows) == 1
    assert rows[0].enabled is False
    assert rows[0].reason == "pilot ended"
    assert latest.enabled is False
    assert len(_audit_rows(session_factory, flag.id, "override_set")) == 2


def test_concurrent_set_keeps_one_row_and_audits_both(facade, session_factory):
    flag = make_flag(facade)
    org = new_org()

    def _set(enabled):
        return facade.set_override(flag.id, org, enabled, f"concurrent write {enabled}")

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_set, [True, False]))

    rows = _override_rows(session_factory, flag.id)
    assert len(rows) == 1
    assert rows[0].enabled in {r.enabled for r in results}
    assert len(_audit_rows(session_factory, flag.id, "override_set")) == 2


def test_override_is_scoped_to_its_organization(facade):
    flag = make_flag(facade, enabled=False)
    pinned, other = new_org(), new_org()
    facade.set_override(flag.id, pinned, True, "early access")

    assert facade.evaluate_flag(flag.key, pinned).enabled is True
    decision = facade.evaluate_flag(flag.key, other)
    assert decision.enabled is False
    assert decision.source is DecisionSource.DEFAULT


def test_clear_override_restores_rules_and_audits(facade, session_factory):
    flag = make_flag(facade, enabled=True)
    org = new_org()
    actor = uuid.uuid4()
    facade.set_override(flag.id, org, False, "incident 812", actor_user_id=actor)
    facade.clear_override(flag.id, org, actor_user_id=actor)

    assert _override_rows(session_factory, flag.id) == []
    decision = facade.evaluate_flag(flag.key, org)
    assert decision.source is DecisionSource.DEFAULT
    assert decision.enabled is True

    history = facade.tenant_flag_history(org, flag_id=flag.id)
    assert [h.action for h in history] == [AuditAction.OVERRIDE_CLEARED, AuditAction.OVERRIDE_SET]
    cleared = history[0]
    assert isinstance(cleared.metadata, OverrideClearedMetadata)
    assert cleared.metadata.previous_enabled is False
    assert cleared.metadata.previous_reason == "incident 812"
    assert cleared.user_id == actor
    assert isinstance(history[1].metadata, OverrideSetMetadata)


def test_clear_without_override_is_not_found(facade):
    flag = make_flag(facade)
    with pytest.raises(NotFoundError):
        facade.clear_override(flag.id, new_org())


def test_clear_expired_override_is_not_found(facade, session_factory):
    flag = make_flag(facade)
    org = new_org()
    expires_at = utcnow() + timedelta(seconds=30)
    facade.set_override(flag.id, org, True, "short trial", expires_at)

    with pytest.raises(NotFoundError):
        facade.admin.clear_override(
            flag.id, as_org_context(org), now=expires_at + timedelta(seconds=1)
        )
    # expired rows stay for history
    assert len(_override_rows(session_factory, flag.id)) == 1


def test_audit_failure_rolls_back_override(facade, session_factory, monkeypatch):
    flag = make_flag(facade)
    original = facade.audit.record_admin_action

    def _broken(db, **kwargs):
        # flag_id is NOT NULL; the flush fails inside the mutation's transaction
        kwargs["flag_id"] = None
        return original(db, **kwargs)

    monkeypatch.setattr(facade.audit, "record_admin_action", _broken)

    with pytest.raises(AuditWriteFailure):
        facade.set_override(flag.id, new_org(), True, "never lands")
    assert _override_rows(session_factory, flag.id) == []
