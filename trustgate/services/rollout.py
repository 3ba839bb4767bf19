"""Feature flag evaluation logic."""
import hashlib
import logging
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from trustgate.core.enums import DecisionSource, RuleType
from trustgate.core.errors import NotFoundError, StoreUnavailable
from trustgate.crud.tenant_repository import TenantRepository
from trustgate.schemas.feature_flag import Flag, FlagDecision, Rule
from trustgate.services.ops_alerts import DECISIONS, DEGRADED_DECISIONS

logger = logging.getLogger("trustgate.rollout")


def tenant_bucket(organization_id: UUID, flag_key: str) -> int:
    """Deterministic 0-99 bucket based on organization_id + flag_key.
    Same organization+flag always lands in the same bucket → consistent experience,
    and raising a percentage only ever adds organizations.
    """
    h = hashlib.sha256(f"{organization_id}:{flag_key}".encode()).hexdigest()
    return int(h[:8], 16) % 100


def rule_matches(rule: Rule, organization_id: UUID, flag_key: str) -> bool:
    if rule.type is RuleType.ORG_LIST:
        return organization_id in rule.organization_ids
    if rule.type is RuleType.PERCENTAGE:
        return tenant_bucket(organization_id, flag_key) < rule.percentage
    if rule.type is RuleType.GLOBAL:
        return True
    return False


class RolloutResolver:
    """
    Resolve a flag for one organization.

    Priority:
    1. Live override for (flag, organization): always wins
    2. First matching enabled rule, ordered by (priority, id)
    3. The flag's default

    Plain resolution is not audited. If the store is unavailable the flag's
    default is returned (or disabled, when even the flag could not be read)
    and the decision is marked degraded.
    """

    def resolve(
        self,
        repo: TenantRepository,
        flag_key: str,
        *,
        now: Optional[datetime] = None,
    ) -> FlagDecision:
        try:
            flag = repo.get_flag(flag_key)
        except StoreUnavailable as exc:
            return self._degraded(repo, flag_key, False, exc)
        if flag is None:
            raise NotFoundError(f"Flag '{flag_key}' not found", key=flag_key)

        try:
            decision = self._evaluate(repo, flag, now)
        except StoreUnavailable as exc:
            return self._degraded(repo, flag.key, flag.enabled, exc)

        DECISIONS.labels(decision="flag", outcome=decision.source.value).inc()
        return decision

    def resolve_all(
        self,
        repo: TenantRepository,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, FlagDecision]:
        try:
            flags = repo.list_flags()
        except StoreUnavailable as exc:
            logger.warning(
                "Flag catalog unavailable for org %s, returning no flags: %s",
                repo.organization_id, exc,
            )
            DEGRADED_DECISIONS.labels(decision="flag").inc()
            return {}

        decisions = {}
        for flag in flags:
            try:
                decisions[flag.key] = self._evaluate(repo, flag, now)
            except StoreUnavailable as exc:
                decisions[flag.key] = self._degraded(repo, flag.key, flag.enabled, exc)
        return decisions

    def _evaluate(self, repo: TenantRepository, flag: Flag, now: Optional[datetime]) -> FlagDecision:
        override = repo.get_override(flag.id, now=now)
        if override is not None:
            return FlagDecision(key=flag.key, enabled=override.enabled, source=DecisionSource.OVERRIDE)

        rules = sorted(
            (r for r in repo.list_rules(flag.id) if r.enabled),
            key=lambda r: r.sort_key,
        )
        for rule in rules:
            if rule_matches(rule, repo.organization_id, flag.key):
                return FlagDecision(
                    key=flag.key,
                    enabled=rule.enabled,
                    source=DecisionSource.RULE,
                    rule_id=rule.id,
                )

        return FlagDecision(key=flag.key, enabled=flag.enabled, source=DecisionSource.DEFAULT)

    def _degraded(
        self,
        repo: TenantRepository,
        flag_key: str,
        default: bool,
        exc: StoreUnavailable,
    ) -> FlagDecision:
        logger.warning(
            "Flag %s evaluated in degraded mode for org %s (default=%s): %s",
            flag_key, repo.organization_id, default, exc,
            extra={"flag_key": flag_key},
        )
        DEGRADED_DECISIONS.labels(decision="flag").inc()
        return FlagDecision(
            key=flag_key, enabled=default, source=DecisionSource.DEFAULT, degraded=True
        )
