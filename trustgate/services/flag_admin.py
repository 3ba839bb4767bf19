"""
Flag administration: overrides, rules and the flag catalog.

Every mutation runs in one transaction together with its audit row. Transient
store failures are retried with exponential backoff (write path only);
validation, not-found and audit failures are not retried.
"""
import logging
import re
from datetime import datetime
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from trustgate.config import settings
from trustgate.core.clock import as_utc, utcnow
from trustgate.core.enums import RuleType
from trustgate.core.errors import NotFoundError, StoreUnavailable, ValidationError
from trustgate.crud import crud_flag
from trustgate.crud.tenant_repository import OrgContext, TenantRepository, store_call
from trustgate.schemas.audit import (
    FlagCreatedMetadata,
    FlagDeletedMetadata,
    FlagUpdatedMetadata,
    OverrideClearedMetadata,
    OverrideSetMetadata,
    RuleDeletedMetadata,
    RuleUpsertedMetadata,
)
from trustgate.schemas.feature_flag import FLAG_KEY_PATTERN, MAX_REASON_LENGTH, Flag, Override, Rule
from trustgate.services.audit_trail import AuditTrail
from trustgate.services.flag_cache import FlagCache, flag_index_key, flag_key, rules_key

logger = logging.getLogger("trustgate.admin")

_FLAG_KEY_RE = re.compile(FLAG_KEY_PATTERN)


def validate_percentage(percentage) -> int:
    if isinstance(percentage, bool) or not isinstance(percentage, int):
        raise ValidationError("percentage must be an integer", percentage=percentage)
    if not 0 <= percentage <= 100:
        raise ValidationError("percentage must be within [0, 100]", percentage=percentage)
    return percentage


def validate_reason(reason: Optional[str]) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason must not be empty")
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
    return reason


def validate_flag_key(key: str) -> str:
    if not key or len(key) > 100 or not _FLAG_KEY_RE.match(key):
        raise ValidationError(
            "key must be 1-100 lowercase alphanumeric characters or underscores", key=key
        )
    return key


def validate_expiry(expires_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    if expires_at is None:
        return None
    expires_at = as_utc(expires_at)
    if expires_at <= now:
        raise ValidationError("expires_at must be in the future", expires_at=expires_at.isoformat())
    return expires_at


class FlagAdminService:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        audit: AuditTrail,
        cache: Optional[FlagCache] = None,
    ):
        self._session_factory = session_factory
        self.audit = audit
        self.cache = cache

    @retry(
        retry=retry_if_exception_type(StoreUnavailable),
        stop=stop_after_attempt(settings.STORE_WRITE_RETRIES),
        wait=wait_exponential(multiplier=0.1, max=2),
        reraise=True,
    )
    def _transaction(self, operation: str, fn: Callable, *args, **kwargs):
        db = self._session_factory()
        try:
            with store_call(operation):
                result = fn(db, *args, **kwargs)
                db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _invalidate(self, *keys: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(*keys)

    @staticmethod
    def _require_flag(db: Session, flag_id: UUID):
        flag = crud_flag.get_flag(db, flag_id)
        if flag is None:
            raise NotFoundError(f"Flag {flag_id} not found", flag_id=str(flag_id))
        return flag

    # ═══════════════════════════════════════════
    #  Overrides
    # ═══════════════════════════════════════════

    def set_override(
        self,
        flag_id: UUID,
        org: OrgContext,
        *,
        enabled: bool,
        reason: str,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Override:
        now = now or utcnow()
        reason = validate_reason(reason)
        expires_at = validate_expiry(expires_at, now)
        override = self._transaction(
            "set_override", self._set_override_tx, flag_id, org, enabled, reason, expires_at
        )
        logger.info(
            "Override set: flag=%s org=%s enabled=%s expires_at=%s",
            flag_id, org.organization_id, enabled, expires_at,
        )
        return override

    def _set_override_tx(self, db, flag_id, org, enabled, reason, expires_at) -> Override:
        self._require_flag(db, flag_id)
        repo = TenantRepository(db, org, self.cache)
        override = repo.upsert_override(
            flag_id, enabled=enabled, reason=reason, expires_at=expires_at
        )
        self.audit.record_admin_action(
            db,
            flag_id=flag_id,
            organization_id=org.organization_id,
            user_id=org.user_id,
            metadata=OverrideSetMetadata(enabled=enabled, reason=reason, expires_at=expires_at),
        )
        return override

    def clear_override(self, flag_id: UUID, org: OrgContext, *, now: Optional[datetime] = None) -> None:
        self._transaction("clear_override", self._clear_override_tx, flag_id, org, now or utcnow())
        logger.info("Override cleared: flag=%s org=%s", flag_id, org.organization_id)

    def _clear_override_tx(self, db, flag_id, org, now) -> None:
        self._require_flag(db, flag_id)
        repo = TenantRepository(db, org, self.cache)
        previous = repo.delete_override(flag_id, now=now)
        if previous is None:
            raise NotFoundError(
                f"No live override for flag {flag_id} in organization {org.organization_id}",
                flag_id=str(flag_id),
            )
        self.audit.record_admin_action(
            db,
            flag_id=flag_id,
            organization_id=org.organization_id,
            user_id=org.user_id,
            metadata=OverrideClearedMetadata(
                previous_enabled=previous.enabled,
                previous_reason=previous.reason,
                previous_expires_at=previous.expires_at,
            ),
        )

    # ═══════════════════════════════════════════
    #  Rules
    # ═══════════════════════════════════════════

    def upsert_rule(
        self,
        flag_id: UUID,
        *,
        rule_type,
        organization_ids: Optional[Iterable[UUID]] = None,
        percentage: Optional[int] = None,
        priority: int = 100,
        enabled: bool = True,
        rule_id: Optional[UUID] = None,
        actor: Optional[OrgContext] = None,
    ) -> Rule:
        try:
            rule_type = RuleType(rule_type)
        except ValueError:
            raise ValidationError(f"unknown rule type {rule_type!r}") from None
        percentage = validate_percentage(0 if percentage is None else percentage)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer", priority=priority)
        org_ids = sorted({str(UUID(str(o))) for o in (organization_ids or ())})

        rule = self._transaction(
            "upsert_rule", self._upsert_rule_tx,
            flag_id, rule_id, rule_type, org_ids, percentage, priority, enabled, actor,
        )
        self._invalidate(rules_key(flag_id))
        return rule

    def _upsert_rule_tx(
        self, db, flag_id, rule_id, rule_type, org_ids, percentage, priority, enabled, actor
    ) -> Rule:
        self._require_flag(db, flag_id)
        if rule_id is not None:
            existing = crud_flag.get_rule(db, rule_id)
            if existing is not None and existing.flag_id != flag_id:
                raise ValidationError(f"rule {rule_id} belongs to another flag")

        db_obj, created = crud_flag.upsert_rule(
            db,
            flag_id=flag_id,
            rule_id=rule_id,
            rule_type=rule_type.value,
            organization_ids=org_ids,
            percentage=percentage,
            priority=priority,
            enabled=enabled,
        )
        self.audit.record_admin_action(
            db,
            flag_id=flag_id,
            organization_id=actor.organization_id if actor else None,
            user_id=actor.user_id if actor else None,
            metadata=RuleUpsertedMetadata(
                rule_id=db_obj.id,
                created=created,
                type=rule_type.value,
                percentage=percentage,
                priority=priority,
                enabled=enabled,
                organization_count=len(org_ids),
            ),
        )
        return Rule.model_validate(db_obj)

    def delete_rule(self, rule_id: UUID, *, actor: Optional[OrgContext] = None) -> None:
        flag_id = self._transaction("delete_rule", self._delete_rule_tx, rule_id, actor)
        self._invalidate(rules_key(flag_id))

    def _delete_rule_tx(self, db, rule_id, actor) -> UUID:
        db_obj = crud_flag.get_rule(db, rule_id)
        if db_obj is None:
            raise NotFoundError(f"Rule {rule_id} not found", rule_id=str(rule_id))
        flag_id, rule_type = db_obj.flag_id, db_obj.type
        crud_flag.delete_rule(db, db_obj=db_obj)
        self.audit.record_admin_action(
            db,
            flag_id=flag_id,
            organization_id=actor.organization_id if actor else None,
            user_id=actor.user_id if actor else None,
            metadata=RuleDeletedMetadata(rule_id=rule_id, type=rule_type),
        )
        return flag_id

    def list_rules(self, flag_id: UUID) -> List[Rule]:
        db = self._session_factory()
        try:
            with store_call("list_rules"):
                self._require_flag(db, flag_id)
                return [Rule.model_validate(r) for r in crud_flag.list_rules(db, flag_id)]
        finally:
            db.close()

    # ═══════════════════════════════════════════
    #  Flag catalog
    # ═══════════════════════════════════════════

    def create_flag(
        self,
        *,
        key: str,
        name: str,
        description: Optional[str] = None,
        enabled: bool = False,
        actor: Optional[OrgContext] = None,
    ) -> Flag:
        key = validate_flag_key(key)
        if not (name or "").strip():
            raise ValidationError("name must not be empty")
        flag = self._transaction("create_flag", self._create_flag_tx, key, name, description, enabled, actor)
        self._invalidate(flag_key(key), flag_index_key())
        return flag

    def _create_flag_tx(self, db, key, name, description, enabled, actor) -> Flag:
        if crud_flag.get_flag_by_key(db, key) is not None:
            raise ValidationError(f"Flag '{key}' already exists", key=key)
        db_obj = crud_flag.create_flag(db, key=key, name=name, description=description, enabled=enabled)
        self.audit.record_admin_action(
            db,
            flag_id=db_obj.id,
            user_id=actor.user_id if actor else None,
            metadata=FlagCreatedMetadata(key=key, name=name, enabled=enabled),
        )
        return Flag.model_validate(db_obj)

    def update_flag(self, key: str, changes: dict, *, actor: Optional[OrgContext] = None) -> Flag:
        allowed = {k: v for k, v in changes.items() if k in ("name", "description", "enabled")}
        flag = self._transaction("update_flag", self._update_flag_tx, key, allowed, actor)
        self._invalidate(flag_key(key), flag_index_key())
        return flag

    def _update_flag_tx(self, db, key, changes, actor) -> Flag:
        db_obj = crud_flag.get_flag_by_key(db, key)
        if db_obj is None:
            raise NotFoundError(f"Flag '{key}' not found", key=key)
        changed = crud_flag.update_flag(db, db_obj=db_obj, changes=changes)
        if changed:
            self.audit.record_admin_action(
                db,
                flag_id=db_obj.id,
                user_id=actor.user_id if actor else None,
                metadata=FlagUpdatedMetadata(key=key, changed_fields=changed, enabled=db_obj.enabled),
            )
        return Flag.model_validate(db_obj)

    def delete_flag(self, key: str, *, actor: Optional[OrgContext] = None) -> None:
        flag_id = self._transaction("delete_flag", self._delete_flag_tx, key, actor)
        self._invalidate(flag_key(key), rules_key(flag_id), flag_index_key())

    def _delete_flag_tx(self, db, key, actor) -> UUID:
        db_obj = crud_flag.get_flag_by_key(db, key)
        if db_obj is None:
            raise NotFoundError(f"Flag '{key}' not found", key=key)
        flag_id = db_obj.id
        rule_count, override_count = crud_flag.delete_flag(db, db_obj=db_obj)
        self.audit.record_admin_action(
            db,
            flag_id=flag_id,
            user_id=actor.user_id if actor else None,
            metadata=FlagDeletedMetadata(key=key, rule_count=rule_count, override_count=override_count),
        )
        return flag_id

    def get_flag(self, key: str) -> Flag:
        db = self._session_factory()
        try:
            with store_call("get_flag"):
                db_obj = crud_flag.get_flag_by_key(db, key)
            if db_obj is None:
                raise NotFoundError(f"Flag '{key}' not found", key=key)
            return Flag.model_validate(db_obj)
        finally:
            db.close()

    def list_flags(self) -> List[Flag]:
        db = self._session_factory()
        try:
            with store_call("list_flags"):
                return [Flag.model_validate(f) for f in crud_flag.list_flags(db)]
        finally:
            db.close()
