"""API tests for recovery and back-office endpoints."""

from datetime import timedelta

import pytest

from cart_recovery.domain import CartIdentity, utcnow


class TestMarkRecovered:
    @pytest.mark.asyncio
    async def test_open_cart_recovered_organically(self, api_client, seed_cart, t0) -> None:
        cart = await seed_cart(CartIdentity.for_session("sess-9"), t0)

        response = await api_client.post("/api/v1/recoveries", json={"session_id": "sess-9"})

        assert response.status_code == 200
        assert response.json() == {
            "recovered": True,
            "abandoned_cart_id": cart.id,
            "recovery_method": "organic",
        }

    @pytest.mark.asyncio
    async def test_nothing_open(self, api_client) -> None:
        response = await api_client.post("/api/v1/recoveries", json={"user_id": "u-none"})

        assert response.status_code == 200
        assert response.json()["recovered"] is False

    @pytest.mark.asyncio
    async def test_identity_must_be_exactly_one(self, api_client) -> None:
        neither = await api_client.post("/api/v1/recoveries", json={})
        both = await api_client.post("/api/v1/recoveries", json={"session_id": "s", "user_id": "u"})

        assert neither.status_code == 400
        assert both.status_code == 400


class TestBackOffice:
    @pytest.mark.asyncio
    async def test_list_and_filter(self, api_client, repository, seed_cart, t0) -> None:
        await seed_cart(CartIdentity.for_user("u-1"), t0)
        await seed_cart(CartIdentity.for_user("u-2"), t0 + timedelta(minutes=5))
        await repository.mark_recovered(CartIdentity.for_user("u-1"))

        everything = (await api_client.get("/api/v1/abandoned-carts")).json()
        recovered = (await api_client.get("/api/v1/abandoned-carts", params={"status": "recovered"})).json()

        assert everything["total"] == 2
        assert [c["user_id"] for c in everything["carts"]] == ["u-2", "u-1"]
        assert recovered["total"] == 1
        assert recovered["carts"][0]["recovery_method"] == "organic"

    @pytest.mark.asyncio
    async def test_detail_includes_snapshots(self, api_client, seed_cart, t0) -> None:
        cart = await seed_cart(CartIdentity.for_user("u-1"), t0)

        response = await api_client.get(f"/api/v1/abandoned-carts/{cart.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["cart_value_cents"] == 2050
        assert [s["product_name"] for s in data["snapshots"]] == ["Mug", "Socks"]
        assert data["attempts"] == []

    @pytest.mark.asyncio
    async def test_missing_cart(self, api_client) -> None:
        assert (await api_client.get("/api/v1/abandoned-carts/999")).status_code == 404
        assert (await api_client.post("/api/v1/abandoned-carts/999/recover")).status_code == 404

    @pytest.mark.asyncio
    async def test_notes(self, api_client, seed_cart, t0) -> None:
        cart = await seed_cart(CartIdentity.for_user("u-1"), t0)

        response = await api_client.patch(
            f"/api/v1/abandoned-carts/{cart.id}/notes", json={"notes": "Called the customer"}
        )

        assert response.status_code == 200
        assert response.json()["notes"] == "Called the customer"

    @pytest.mark.asyncio
    async def test_manual_recovery(self, api_client, repository, seed_cart, t0) -> None:
        cart = await seed_cart(CartIdentity.for_user("u-1"), t0)

        response = await api_client.post(f"/api/v1/abandoned-carts/{cart.id}/recover")

        assert response.status_code == 200
        assert response.json()["status"] == "recovered"
        assert response.json()["recovery_method"] == "manual"

    @pytest.mark.asyncio
    async def test_expired_cart_cannot_be_recovered(self, api_client, repository, seed_cart, t0) -> None:
        cart = await seed_cart(CartIdentity.for_user("u-1"), t0)
        await repository.expire_stale(t0 + timedelta(days=1))

        response = await api_client.post(f"/api/v1/abandoned-carts/{cart.id}/recover")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_stats(self, api_client, seed_cart) -> None:
        await seed_cart(CartIdentity.for_user("u-1"), utcnow() - timedelta(days=2))

        response = await api_client.get("/api/v1/abandoned-carts/stats", params={"days": 7})

        assert response.status_code == 200
        data = response.json()
        assert data["period_days"] == 7
        assert data["total_abandoned"] == 1
        assert data["active"] == 1
        assert len(data["email_performance"]) == 3
        assert data["top_products"][0]["product_id"] in {"p1", "p2"}
