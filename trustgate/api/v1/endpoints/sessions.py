"""Session integrity API.

- POST /sessions                  → issue an unbound session for a user
- POST /sessions/verify           → verify a request against the session binding
- GET  /sessions/hijack-attempts  → the organization's recorded hijack attempts
"""

from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request

from trustgate.api import deps
from trustgate.crud.tenant_repository import OrgContext
from trustgate.schemas.audit import HijackAttempt
from trustgate.schemas.session import SessionBinding, SessionIssue, VerifyDecision, VerifyRequestBody
from trustgate.services.decision_facade import TrustDecisionFacade

router = APIRouter()


@router.post("/", response_model=SessionBinding, status_code=201)
def issue_session(
    body: SessionIssue,
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.issue_session(body.session_id, org, body.user_id, body.expires_at)


@router.post("/verify", response_model=VerifyDecision)
def verify_session(
    body: VerifyRequestBody,
    request: Request,
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    """
    Verify the caller's (ip, user-agent) against the session binding.
    The gateway forwards the original request's context in the body; when it
    does not, the context of this call is used.
    """
    ip = body.ip
    if ip is None and request.client:
        ip = request.client.host
    user_agent = body.user_agent
    if user_agent is None:
        user_agent = request.headers.get("user-agent")
    return facade.verify_request(
        body.session_id,
        org,
        body.user_id,
        ip,
        user_agent,
        path=body.path,
        method=body.method,
    )


@router.get("/hijack-attempts", response_model=List[HijackAttempt])
def list_hijack_attempts(
    session_id: Optional[str] = None,
    user_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 100,
    org: OrgContext = Depends(deps.get_org_context),
    facade: TrustDecisionFacade = Depends(deps.get_facade),
) -> Any:
    return facade.hijack_attempts(
        org, session_id=session_id, user_id=user_id, skip=skip, limit=limit
    )
