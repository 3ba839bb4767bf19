"""Feature flag API.

Tenant endpoints (X-Organization-Id):
- GET    /flags/evaluate                         → evaluate every flag for the organization
- GET    /flags/{key}/evaluate                   → evaluate one flag
- GET    /flags/audit                            → the organization's override history

Admin endpoints (X-Service-Token):
- GET    /flags                                  → list flags
- POST   /flags                                  → create flag
- GET    /flags/{key}                            → get flag with its rules
- PATCH  /flags/{key}                            → update flag
- DELETE /flags/{key}                            → delete flag (rules/overrides cascade)
- PUT    /flags/{key}/rules                      → create or update a rule
- DELETE /flags/{key}/rules/{rule_id}            → delete a rule
- PUT    /flags/{key}/overrides/{organization_id} → set an override
- DELETE /flags/{key}/overrides/{organization_id} → clear an override
- GET    /flags/{key}/audit                      → full audit history of a flag
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header

from trustgate.api import deps
from trustgate.crud.tenant_repository import OrgContext
from trustgate.schemas.audit import FlagAuditEntry
from trustgate.schemas.feature_flag import (
    Flag,
    FlagCreate,
    FlagDecision,
    FlagUpdate,
    OverrideSet,
    Override,
    Rule,
    RuleUpsert,
)
from trustgate.services.decision_facade import TrustDecisionFacade

router = APIRouter()


def get_admin_actor(
    x_organization_id: Optional[UUID] = Header(None, alias="X-Organization-Id"),
    x_user_id: Optional[UUID] = Header(None, alias="X-User-Id"),
) -> Optional[OrgContext]:
    """Optional actor for the audit trail; admin calls are not tenant scoped."""
    if x_organization_id is None:
        return None
    return OrgContext(organization_id=x_organization_id, user_id=x_user_id)


# ── Tenant endpoints ──

@router.get("/evaluate", response_model=Dict[str, FlagDecision])
def evaluate_all_flags(
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.evaluate_all(org)


@router.get("/audit", response_model=List[FlagAuditEntry])
def list_tenant_flag_audit(
    action: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.tenant_flag_history(org, action=action, skip=skip, limit=limit)


@router.get("/{key}/evaluate", response_model=FlagDecision)
def evaluate_feature_flag(
    key: str,
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.evaluate_flag(key, org)


# ── Admin endpoints ──

@router.get("/", response_model=List[Flag], dependencies=[Depends(deps.require_service_token)])
def list_feature_flags(
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.list_flags()


@router.post("/", response_model=Flag, status_code=201, dependencies=[Depends(deps.require_service_token)])
def create_feature_flag(
    body: FlagCreate,
    actor: Optional[OrgContext] = Depends(get_admin_actor),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.create_flag(
        body.key, body.name, description=body.description, enabled=body.enabled, actor=actor
    )


@router.get("/{key}", dependencies=[Depends(deps.require_service_token)])
def get_feature_flag(
    key: str,
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    flag = facade.get_flag(key)
    rules = facade.list_rules(flag.id)
    return {
        **flag.model_dump(mode="json"),
        "rules": [r.model_dump(mode="json") for r in rules],
    }


@router.patch("/{key}", response_model=Flag, dependencies=[Depends(deps.require_service_token)])
def update_feature_flag(
    key: str,
    body: FlagUpdate,
    actor: Optional[OrgContext] = Depends(get_admin_actor),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.update_flag(key, body.model_dump(exclude_unset=True), actor=actor)


@router.delete("/{key}", dependencies=[Depends(deps.require_service_token)])
def delete_feature_flag(
    key: str,
    actor: Optional[OrgContext] = Depends(get_admin_actor),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    facade.delete_flag(key, actor=actor)
    return {"ok": True}


@router.put("/{key}/rules", response_model=Rule, dependencies=[Depends(deps.require_service_token)])
def upsert_flag_rule(
    key: str,
    body: RuleUpsert,
    actor: Optional[OrgContext] = Depends(get_admin_actor),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    flag = facade.get_flag(key)
    return facade.upsert_rule(
        flag.id,
        body.type,
        organization_ids=body.organization_ids,
        percentage=body.percentage,
        priority=body.priority,
        enabled=body.enabled,
        rule_id=body.id,
        actor=actor,
    )


@router.delete("/{key}/rules/{rule_id}", dependencies=[Depends(deps.require_service_token)])
def delete_flag_rule(
    key: str,
    rule_id: UUID,
    actor: Optional[OrgContext] = Depends(get_admin_actor),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    facade.get_flag(key)
    facade.delete_rule(rule_id, actor=actor)
    return {"ok": True}


@router.put(
    "/{key}/overrides/{organization_id}",
    response_model=Override,
    dependencies=[Depends(deps.require_service_token)],
)
def set_flag_override(
    key: str,
    organization_id: UUID,
    body: OverrideSet,
    x_user_id: Optional[UUID] = Header(None, alias="X-User-Id"),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    flag = facade.get_flag(key)
    return facade.set_override(
        flag.id, organization_id, body.enabled, body.reason, body.expires_at,
        actor_user_id=x_user_id,
    )


@router.delete(
    "/{key}/overrides/{organization_id}",
    dependencies=[Depends(deps.require_service_token)],
)
def clear_flag_override(
    key: str,
    organization_id: UUID,
    x_user_id: Optional[UUID] = Header(None, alias="X-User-Id"),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    flag = facade.get_flag(key)
    facade.clear_override(flag.id, organization_id, actor_user_id=x_user_id)
    return {"ok": True}


@router.get(
    "/{key}/audit",
    response_model=List[FlagAuditEntry],
    dependencies=[Depends(deps.require_service_token)],
)
def list_flag_audit(
    key: str,
    skip: int = 0,
    limit: int = 100,
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    flag = facade.get_flag(key)
    return facade.flag_history(flag.id, skip=skip, limit=limit)
