"""HTTP surface: admin catalog, evaluation and session endpoints."""
import uuid
from datetime import timedelta

from httpx import AsyncClient

from trustgate.core.clock import utcnow
from tests.conftest import CHROME_UA

FLAGS_URL = "/api/v1/flags"
SESSIONS_URL = "/api/v1/sessions"


def _org_headers(org=None, user=None):
    headers = {"X-Organization-Id": str(org or uuid.uuid4())}
    if user:
        headers["X-User-Id"] = str(user)
    return headers


async def _create_flag(client: AsyncClient, admin_headers: dict, key="new_dashboard", enabled=False):
    resp = await client.post(
        f"{FLAGS_URL}/", headers=admin_headers,
        json={"key": key, "name": key.title(), "enabled": enabled},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_admin_routes_require_service_token(client: AsyncClient):
    resp = await client.get(f"{FLAGS_URL}/")
    assert resp.status_code == 403
    resp = await client.get(f"{FLAGS_URL}/", headers={"X-Service-Token": "wrong"})
    assert resp.status_code == 403


async def test_flag_crud(client: AsyncClient, admin_headers: dict):
    flag = await _create_flag(client, admin_headers)

    dup = await client.post(
        f"{FLAGS_URL}/", headers=admin_headers, json={"key": flag["key"], "name": "Again"}
    )
    assert dup.status_code == 422

    resp = await client.patch(
        f"{FLAGS_URL}/new_dashboard", headers=admin_headers, json={"enabled": True}
    )
    assert resp.status_code == 200
    assert resp.json()["enabled"] is True

    listing = await client.get(f"{FLAGS_URL}/", headers=admin_headers)
    assert [f["key"] for f in listing.json()] == ["new_dashboard"]

    resp = await client.delete(f"{FLAGS_URL}/new_dashboard", headers=admin_headers)
    assert resp.status_code == 200
    resp = await client.get(f"{FLAGS_URL}/new_dashboard", headers=admin_headers)
    assert resp.status_code == 404


async def test_invalid_flag_key_is_rejected(client: AsyncClient, admin_headers: dict):
    resp = await client.post(
        f"{FLAGS_URL}/", headers=admin_headers, json={"key": "Bad-Key", "name": "Bad"}
    )
    assert resp.status_code == 422


async def test_rule_and_evaluation(client: AsyncClient, admin_headers: dict):
    await _create_flag(client, admin_headers)
    org = uuid.uuid4()

    resp = await client.put(
        f"{FLAGS_URL}/new_dashboard/rules", headers=admin_headers,
        json={"type": "org_list", "organization_ids": [str(org)], "priority": 10},
    )
    assert resp.status_code == 200, resp.text
    rule_id = resp.json()["id"]

    detail = await client.get(f"{FLAGS_URL}/new_dashboard", headers=admin_headers)
    assert [r["id"] for r in detail.json()["rules"]] == [rule_id]

    resp = await client.get(f"{FLAGS_URL}/new_dashboard/evaluate", headers=_org_headers(org))
    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "key": "new_dashboard", "enabled": True, "source": "rule",
        "rule_id": rule_id, "degraded": False,
    }

    outsider = await client.get(f"{FLAGS_URL}/new_dashboard/evaluate", headers=_org_headers())
    assert outsider.json()["source"] == "default"
    assert outsider.json()["enabled"] is False

    resp = await client.delete(f"{FLAGS_URL}/new_dashboard/rules/{rule_id}", headers=admin_headers)
    assert resp.status_code == 200
    resp = await client.get(f"{FLAGS_URL}/new_dashboard/evaluate", headers=_org_headers(org))
    assert resp.json()["source"] == "default"


async def test_percentage_out_of_range_is_rejected(client: AsyncClient, admin_headers: dict):
    await _create_flag(client, admin_headers)
    resp = await client.put(
        f"{FLAGS_URL}/new_dashboard/rules", headers=admin_headers,
        json={"type": "percentage", "percentage": 101},
    )
    assert resp.status_code == 422


async def test_evaluate_requires_organization(client: AsyncClient, admin_headers: dict):
    await _create_flag(client, admin_headers)
    resp = await client.get(f"{FLAGS_URL}/new_dashboard/evaluate")
    assert resp.status_code == 422


async def test_evaluate_unknown_flag_is_404(client: AsyncClient):
    resp = await client.get(f"{FLAGS_URL}/nope/evaluate", headers=_org_headers())
    assert resp.status_code == 404


async def test_override_lifecycle(client: AsyncClient, admin_headers: dict):
    await _create_flag(client, admin_headers)
    org = uuid.uuid4()
    url = f"{FLAGS_URL}/new_dashboard/overrides/{org}"

    resp = await client.put(url, headers=admin_headers, json={"enabled": True, "reason": ""})
    assert resp.status_code == 422

    expires_at = (utcnow() + timedelta(days=7)).isoformat()
    resp = await client.put(
        url, headers=admin_headers,
        json={"enabled": True, "reason": "enterprise pilot", "expires_at": expires_at},
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["organization_id"] == str(org)

    all_flags = await client.get(f"{FLAGS_URL}/evaluate", headers=_org_headers(org))
    assert all_flags.json()["new_dashboard"]["source"] == "override"

    tenant_audit = await client.get(f"{FLAGS_URL}/audit", headers=_org_headers(org))
    assert [e["action"] for e in tenant_audit.json()] == ["override_set"]
    assert tenant_audit.json()[0]["metadata"]["reason"] == "enterprise pilot"

    resp = await client.delete(url, headers=admin_headers)
    assert resp.status_code == 200
    resp = await client.delete(url, headers=admin_headers)
    assert resp.status_code == 404

    history = await client.get(f"{FLAGS_URL}/new_dashboard/audit", headers=admin_headers)
    assert [e["action"] for e in history.json()] == [
        "override_cleared", "override_set", "flag_created",
    ]


async def test_session_issue_verify_and_attempts(client: AsyncClient):
    org, user = uuid.uuid4(), uuid.uuid4()
    headers = _org_headers(org, user)
    expires_at = (utcnow() + timedelta(hours=8)).isoformat()

    resp = await client.post(
        f"{SESSIONS_URL}/", headers=headers,
        json={"session_id": "sess_api_1", "user_id": str(user), "expires_at": expires_at},
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["bound_ip"] is None

    verify = {"session_id": "sess_api_1", "user_id": str(user), "ip": "10.1.1.1", "user_agent": CHROME_UA}
    resp = await client.post(f"{SESSIONS_URL}/verify", headers=headers, json=verify)
    assert resp.json() == {"action": "allow", "mismatch_type": None, "degraded": False}

    resp = await client.post(
        f"{SESSIONS_URL}/verify", headers=headers,
        json={**verify, "ip": "10.2.2.2", "path": "/billing", "method": "POST"},
    )
    assert resp.json()["action"] == "block"
    assert resp.json()["mismatch_type"] == "ip_mismatch"

    attempts = await client.get(f"{SESSIONS_URL}/hijack-attempts", headers=headers)
    assert attempts.status_code == 200
    [attempt] = attempts.json()
    assert attempt["session_id"] == "sess_api_1"
    assert attempt["blocked"] is True
    assert attempt["request_method"] == "POST"

    other = await client.get(f"{SESSIONS_URL}/hijack-attempts", headers=_org_headers())
    assert other.json() == []


async def test_verify_unknown_session_is_404(client: AsyncClient):
    resp = await client.post(
        f"{SESSIONS_URL}/verify", headers=_org_headers(),
        json={"session_id": "missing", "user_id": str(uuid.uuid4()), "ip": "10.0.0.1"},
    )
    assert resp.status_code == 404


async def test_metrics_endpoint(client: AsyncClient):
    await client.get("/health")
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
