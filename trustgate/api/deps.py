import secrets
from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Header, HTTPException, status

from trustgate.config import settings
from trustgate.crud.tenant_repository import OrgContext
from trustgate.logging_config import tenant_id_ctx, user_id_ctx
from trustgate.services.decision_facade import TrustDecisionFacade


@lru_cache(maxsize=1)
def get_facade() -> TrustDecisionFacade:
    from trustgate.db.session import SessionLocal
    from trustgate.services.flag_cache import flag_cache

    return TrustDecisionFacade(SessionLocal, cache=flag_cache)


def get_org_context(
    x_organization_id: UUID = Header(..., alias="X-Organization-Id"),
    x_user_id: Optional[UUID] = Header(None, alias="X-User-Id"),
) -> OrgContext:
    """Organization context for the current request; required on every tenant route."""
    tenant_id_ctx.set(str(x_organization_id))
    if x_user_id:
        user_id_ctx.set(str(x_user_id))
    return OrgContext(organization_id=x_organization_id, user_id=x_user_id)


def require_service_token(
    x_service_token: str = Header("", alias="X-Service-Token"),
) -> None:
    """Dependency: require the admin service token."""
    if not x_service_token or not secrets.compare_digest(x_service_token, settings.SERVICE_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Service token required",
        )
