# test_routes.py
import uuid

import pytest
from fastapi.testclient import TestClient

from viewforge.auth import create_access_token
from viewforge.db import async_session_maker
from viewforge.ledger import CreditLedger
from viewforge.models import Product
from viewforge.routes import get_feature_extractor, get_image_generator, get_object_store
from viewforge.server import app


@pytest.fixture(scope="module")
def client(api_services):
    app.dependency_overrides[get_image_generator] = lambda: api_services["generator"]
    app.dependency_overrides[get_object_store] = lambda: api_services["store"]
    app.dependency_overrides[get_feature_extractor] = lambda: api_services["extractor"]
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def seed(client, credits=20, generation_mode="regular"):
    """Creates a user with a product and credits; returns (auth headers, product id)."""
    user_id = uuid.uuid4()
    product_id = uuid.uuid4()

    async def create():
        async with async_session_maker() as session:
            session.add(Product(
                id=product_id, owner_id=user_id, name="Desk lamp", assets={}, generation_mode=generation_mode
            ))
            await session.commit()
            if credits:
                await CreditLedger(session, user_id).grant(credits)

    client.portal.call(create)
    headers = {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return headers, str(product_id)


class TestAuthAndHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_token(self, client):
        assert client.get("/api/credits/balance").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/credits/balance", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_balance(self, client):
        headers, _ = seed(client, credits=7)
        response = client.get("/api/credits/balance", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"balance": 7}


class TestWorkflowEndpoints:
    def test_full_progressive_flow(self, client):
        headers, product_id = seed(client)

        front = client.post(
            "/api/workflow/front-view",
            json={"product_id": product_id, "user_prompt": "A brass desk lamp"},
            headers=headers,
        ).json()
        assert front["success"], front
        approval_id = front["approval_id"]

        pending = client.get(f"/api/workflow/products/{product_id}/pending-approval", headers=headers)
        assert pending.status_code == 200
        assert pending.json()["id"] == approval_id

        decision = client.post(
            f"/api/workflow/approvals/{approval_id}/decision", json={"action": "approve"}, headers=headers
        ).json()
        assert decision["success"]
        assert decision["action"] == "approved"

        remaining = client.post(
            f"/api/workflow/approvals/{approval_id}/remaining-views",
            json={"front_view_url": front["front_view_url"]},
            headers=headers,
        ).json()
        assert remaining["success"]
        views = dict(remaining["views"], front=front["front_view_url"])

        revision = client.post(
            "/api/workflow/revisions",
            json={"product_id": product_id, "approval_id": approval_id, "all_views": views, "is_initial": True},
            headers=headers,
        ).json()
        assert revision["success"], revision
        assert revision["revision_number"] == 0

        active = client.get(f"/api/workflow/products/{product_id}/active-revision", headers=headers).json()
        assert sorted(row["view_type"] for row in active) == ["back", "bottom", "front", "side", "top"]

        versions = client.get(f"/api/workflow/products/{product_id}/front-view-versions", headers=headers).json()
        assert [v["status"] for v in versions] == ["completed"]

        pending = client.get(f"/api/workflow/products/{product_id}/pending-approval", headers=headers)
        assert pending.json() is None

        balance = client.get("/api/credits/balance", headers=headers).json()
        assert balance["balance"] == 15

    def test_failures_are_reported_in_the_body(self, client):
        headers, product_id = seed(client, credits=0)

        response = client.post(
            "/api/workflow/front-view",
            json={"product_id": product_id, "user_prompt": "A brass desk lamp"},
            headers=headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "Insufficient credits" in body["error"]

    def test_incomplete_batch_is_refused(self, client):
        headers, product_id = seed(client)

        response = client.post(
            "/api/workflow/revisions",
            json={
                "product_id": product_id,
                "approval_id": str(uuid.uuid4()),
                "all_views": {"front": "https://cdn.example.com/front.png"},
            },
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_invalid_product_id(self, client):
        headers, _ = seed(client)
        response = client.get("/api/workflow/products/not-a-uuid/pending-approval", headers=headers)
        assert response.status_code == 400


class TestRegularMode:
    def test_convert(self, client):
        headers, product_id = seed(client, generation_mode="black_and_white")

        response = client.post(f"/api/workflow/products/{product_id}/regular-mode", headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_unknown_product(self, client):
        headers, _ = seed(client)

        response = client.post(f"/api/workflow/products/{uuid.uuid4()}/regular-mode", headers=headers)

        assert response.status_code == 404
