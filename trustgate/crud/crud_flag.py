"""Platform flag catalog: flags and rules.

Flags and rules are not tenant data; tenants only ever see them through
TenantRepository, which projects rules to a single organization. These
helpers never commit: callers own the transaction so the audit row lands
in the same commit as the change.
"""
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from trustgate.models.feature_flag import FeatureFlag, FlagAuditLog, FlagOverride, FlagRule


def get_flag(db: Session, flag_id: UUID) -> Optional[FeatureFlag]:
    return db.query(FeatureFlag).filter(FeatureFlag.id == flag_id).first()


def get_flag_by_key(db: Session, key: str) -> Optional[FeatureFlag]:
    return db.query(FeatureFlag).filter(FeatureFlag.key == key).first()


def list_flags(db: Session) -> List[FeatureFlag]:
    return db.query(FeatureFlag).order_by(FeatureFlag.key).all()


def create_flag(
    db: Session,
    *,
    key: str,
    name: str,
    description: Optional[str] = None,
    enabled: bool = False,
) -> FeatureFlag:
    db_obj = FeatureFlag(key=key, name=name, description=description, enabled=enabled)
    db.add(db_obj)
    db.flush()
    return db_obj


def update_flag(db: Session, *, db_obj: FeatureFlag, changes: Dict[str, Any]) -> List[str]:
    """Apply changes; returns the names of fields whose value actually changed."""
    changed = []
    for field, value in changes.items():
        if getattr(db_obj, field) != value:
            setattr(db_obj, field, value)
            changed.append(field)
    db.flush()
    return changed


def delete_flag(db: Session, *, db_obj: FeatureFlag) -> Tuple[int, int]:
    """Delete a flag; rules and overrides cascade. Returns (rule_count, override_count)."""
    rule_count = db.query(func.count(FlagRule.id)).filter(FlagRule.flag_id == db_obj.id).scalar()
    override_count = (
        db.query(func.count(FlagOverride.id)).filter(FlagOverride.flag_id == db_obj.id).scalar()
    )
    db.delete(db_obj)
    db.flush()
    return rule_count or 0, override_count or 0


def get_rule(db: Session, rule_id: UUID) -> Optional[FlagRule]:
    return db.query(FlagRule).filter(FlagRule.id == rule_id).first()


def list_rules(db: Session, flag_id: UUID) -> List[FlagRule]:
    return (
        db.query(FlagRule)
        .filter(FlagRule.flag_id == flag_id)
        .order_by(FlagRule.priority, FlagRule.id)
        .all()
    )


def upsert_rule(
    db: Session,
    *,
    flag_id: UUID,
    rule_id: Optional[UUID],
    rule_type: str,
    organization_ids: List[str],
    percentage: int,
    priority: int,
    enabled: bool,
) -> Tuple[FlagRule, bool]:
    """Create or update a rule. Returns (rule, created)."""
    db_obj = get_rule(db, rule_id) if rule_id else None
    created = db_obj is None
    if created:
        db_obj = FlagRule(flag_id=flag_id)
        if rule_id:
            db_obj.id = rule_id
        db.add(db_obj)

    db_obj.type = rule_type
    db_obj.organization_ids = organization_ids
    db_obj.percentage = percentage
    db_obj.priority = priority
    db_obj.enabled = enabled
    db.flush()
    return db_obj, created


def delete_rule(db: Session, *, db_obj: FlagRule) -> None:
    db.delete(db_obj)
    db.flush()


def list_flag_audit(
    db: Session,
    *,
    flag_id: UUID,
    skip: int = 0,
    limit: int = 100,
) -> List[FlagAuditLog]:
    """Platform view of a flag's full history across organizations."""
    return (
        db.query(FlagAuditLog)
        .filter(FlagAuditLog.flag_id == flag_id)
        .order_by(FlagAuditLog.created_at.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )
