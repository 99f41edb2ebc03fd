from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from botforge.apps.api.main import create_app
from botforge.tests.utils.factories import create_api_user, create_plan, create_user, read_subscription, subscribe


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_envelope_carries_request_id() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["request_id"] == "req-health"
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_missing_or_invalid_key_is_unauthorized() -> None:
    async with _client() as client:
        missing = await client.post("/v1/chatbots", json={"name": "bot"})
        invalid = await client.post(
            "/v1/chatbots", json={"name": "bot"}, headers={"Authorization": "Bearer bfk_nope_nope"}
        )
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "auth_unauthorized"
    assert invalid.status_code == 401


@pytest.mark.asyncio
async def test_chatbot_create_and_quota_denial_envelope() -> None:
    user_id, headers = await create_api_user()
    subscription = await subscribe(user_id, max_chatbot_count=1)

    async with _client() as client:
        created = await client.post("/v1/chatbots", json={"name": "support"}, headers=headers)
        denied = await client.post("/v1/chatbots", json={"name": "sales"}, headers=headers)

    assert created.status_code == 201
    assert created.json()["data"]["visibility"] == "private"
    assert denied.status_code == 402
    error = denied.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"] == {"counter": "chatbots", "used": 1, "limit": 1, "requested": 1}
    assert (await read_subscription(subscription.id)).used_chatbot_count == 1


@pytest.mark.asyncio
async def test_chatbot_create_without_subscription_is_402() -> None:
    _user_id, headers = await create_api_user()
    async with _client() as client:
        response = await client.post("/v1/chatbots", json={"name": "bot"}, headers=headers)
    assert response.status_code == 402
    assert response.json()["error"]["code"] == "subscription_inactive"


@pytest.mark.asyncio
async def test_foreign_chatbot_delete_is_not_owner() -> None:
    owner_id, owner_headers = await create_api_user()
    _other_id, other_headers = await create_api_user()
    await subscribe(owner_id)
    async with _client() as client:
        created = await client.post("/v1/chatbots", json={"name": "support"}, headers=owner_headers)
        chatbot_id = created.json()["data"]["id"]
        denied = await client.delete(f"/v1/chatbots/{chatbot_id}", headers=other_headers)
        deleted = await client.delete(f"/v1/chatbots/{chatbot_id}", headers=owner_headers)
        missing = await client.delete(f"/v1/chatbots/{chatbot_id}", headers=owner_headers)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "not_owner"
    assert deleted.status_code == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_document_word_ceiling_over_http() -> None:
    user_id, headers = await create_api_user()
    await subscribe(user_id, max_word_count_per_document=3)
    async with _client() as client:
        ok = await client.post("/v1/documents", json={"name": "a", "content": "one two three"}, headers=headers)
        denied = await client.post(
            "/v1/documents", json={"name": "b", "content": "one two three four"}, headers=headers
        )
    assert ok.status_code == 201
    assert ok.json()["data"]["word_count"] == 3
    assert denied.status_code == 402
    assert denied.json()["error"]["details"]["counter"] == "words_per_document"


@pytest.mark.asyncio
async def test_admin_routes_require_all_scope_grants() -> None:
    _user_id, user_headers = await create_api_user(roles=("user",))
    _admin_id, admin_headers = await create_api_user(roles=("admin",))
    async with _client() as client:
        denied = await client.post("/v1/admin/plans", json={"name": "gold"}, headers=user_headers)
        created = await client.post(
            "/v1/admin/plans",
            json={"name": "gold", "price": 1999, "max_chatbot_count": 10, "max_document_count": 20},
            headers=admin_headers,
        )
        duplicate = await client.post("/v1/admin/plans", json={"name": "gold"}, headers=admin_headers)
        listing = await client.get("/v1/admin/plans", headers=admin_headers)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "insufficient_permission"
    assert created.status_code == 201
    assert created.json()["data"]["max_chatbot_count"] == 10
    assert duplicate.status_code == 409
    assert listing.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_admin_subscription_flow_and_duplicate_conflict() -> None:
    _admin_id, admin_headers = await create_api_user(roles=("admin",))
    customer_id, customer_headers = await create_api_user(roles=("user",))
    plan = await create_plan(max_chatbot_count=3)

    async with _client() as client:
        created = await client.post(
            "/v1/admin/subscriptions",
            json={"user_id": customer_id, "plan_id": plan.id},
            headers=admin_headers,
        )
        duplicate = await client.post(
            "/v1/admin/subscriptions",
            json={"user_id": customer_id, "plan_id": plan.id},
            headers=admin_headers,
        )
        mine = await client.get("/v1/me/subscriptions", headers=customer_headers)
        subscription_id = created.json()["data"]["id"]
        cancelled = await client.delete(f"/v1/admin/subscriptions/{subscription_id}", headers=customer_headers)
        again = await client.delete(f"/v1/admin/subscriptions/{subscription_id}", headers=admin_headers)

    assert created.status_code == 201
    assert created.json()["data"]["usage"]["chatbots"] == {"used": 0, "limit": 3, "remaining": 3}
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "duplicate_active_subscription"
    assert [item["id"] for item in mine.json()["data"]["items"]] == [subscription_id]
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert again.status_code == 402
    assert again.json()["error"]["code"] == "subscription_inactive"


@pytest.mark.asyncio
async def test_share_unknown_email_is_bad_request() -> None:
    owner_id, headers = await create_api_user()
    await subscribe(owner_id)
    peer_email = f"peer-{uuid4().hex[:8]}@example.test"
    await create_user(email=peer_email)
    async with _client() as client:
        created = await client.post("/v1/chatbots", json={"name": "support"}, headers=headers)
        chatbot_id = created.json()["data"]["id"]
        bad = await client.post(
            f"/v1/chatbots/{chatbot_id}/shares",
            json={"emails": [peer_email, "ghost@example.test"]},
            headers=headers,
        )
        good = await client.post(f"/v1/chatbots/{chatbot_id}/shares", json={"emails": [peer_email]}, headers=headers)
    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "validation_error"
    assert good.status_code == 200
    assert good.json()["data"]["shared"] == [peer_email]
    assert good.json()["data"]["chatbot"]["visibility"] == "shared"


@pytest.mark.asyncio
async def test_request_validation_errors_use_envelope() -> None:
    _user_id, headers = await create_api_user()
    async with _client() as client:
        response = await client.post("/v1/chatbots", json={"name": ""}, headers=headers)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_role_edits_take_effect_on_next_request() -> None:
    _admin_id, admin_headers = await create_api_user(roles=("admin",))
    viewer_id, viewer_headers = await create_api_user(roles=("user",))

    async with _client() as client:
        before = await client.get("/v1/admin/plans", headers=viewer_headers)
        catalog = await client.get("/v1/permissions", headers=admin_headers)
        read_plans = next(
            item["id"]
            for item in catalog.json()["data"]["items"]
            if (item["action"], item["resource"], item["scope"]) == ("read", "plan", "all")
        )
        role = await client.post(
            "/v1/admin/roles", json={"name": "plan-viewer", "permission_ids": [read_plans]}, headers=admin_headers
        )
        role_id = role.json()["data"]["id"]
        roles = await client.get("/v1/admin/roles", headers=admin_headers)
        user_role_id = next(item["id"] for item in roles.json()["data"]["items"] if item["name"] == "user")
        assigned = await client.put(
            f"/v1/admin/users/{viewer_id}/roles", json={"role_ids": [user_role_id, role_id]}, headers=admin_headers
        )
        during = await client.get("/v1/admin/plans", headers=viewer_headers)
        removed = await client.delete(f"/v1/admin/roles/{role_id}", headers=admin_headers)
        after = await client.get("/v1/admin/plans", headers=viewer_headers)
        system = await client.delete(f"/v1/admin/roles/{user_role_id}", headers=admin_headers)

    assert before.status_code == 403
    assert role.status_code == 201
    assert sorted(assigned.json()["data"]["roles"]) == ["plan-viewer", "user"]
    assert during.status_code == 200
    assert removed.status_code == 204
    assert after.status_code == 403
    assert system.status_code == 400
