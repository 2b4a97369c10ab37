"""API tests for email tracking callbacks."""

from datetime import timedelta

import pytest

from cart_recovery.domain import AttemptStatus, CartIdentity, RecoveryTier


@pytest.fixture
def sent_attempt(repository, seed_cart, t0):
    async def create(token: str = "tok-abc") -> str:
        cart = await seed_cart(CartIdentity.for_user("u-1"), t0)
        sent_at = t0 + timedelta(hours=1)
        attempt_id = await repository.claim_attempt(cart.id, RecoveryTier.EMAIL_1HR, token, "subject", sent_at)
        await repository.complete_attempt(attempt_id, AttemptStatus.SENT, sent_at=sent_at)
        return token

    return create


@pytest.mark.asyncio
async def test_open_returns_pixel_and_records_once(api_client, repository, sent_attempt) -> None:
    token = await sent_attempt()

    first = await api_client.get(f"/api/v1/tracking/{token}/open")
    opened_at = (await repository.get_attempt_by_token(token)).opened_at
    await api_client.get(f"/api/v1/tracking/{token}/open")

    assert first.status_code == 200
    assert first.headers["content-type"] == "image/gif"
    assert first.content.startswith(b"GIF89a")
    assert "no-store" in first.headers["cache-control"]

    attempt = await repository.get_attempt_by_token(token)
    assert attempt.status == AttemptStatus.OPENED
    assert opened_at is not None
    assert attempt.opened_at == opened_at


@pytest.mark.asyncio
async def test_unknown_token_still_gets_pixel(api_client) -> None:
    response = await api_client.get("/api/v1/tracking/nope/open")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/gif"


@pytest.mark.asyncio
async def test_click_redirects_to_cart(api_client, repository, sent_attempt) -> None:
    token = await sent_attempt()

    response = await api_client.get(f"/api/v1/tracking/{token}/click")

    assert response.status_code == 307
    assert response.headers["location"] == "https://shop.example.com/cart"
    attempt = await repository.get_attempt_by_token(token)
    assert attempt.status == AttemptStatus.CLICKED
    assert attempt.clicked_at is not None
    assert attempt.opened_at is not None


@pytest.mark.asyncio
async def test_bounce(api_client, repository, sent_attempt) -> None:
    token = await sent_attempt()

    response = await api_client.post(f"/api/v1/tracking/{token}/bounce", json={"reason": "mailbox full"})
    repeat = await api_client.post(f"/api/v1/tracking/{token}/bounce")

    assert response.json() == {"recorded": True}
    assert repeat.json() == {"recorded": False}
    attempt = await repository.get_attempt_by_token(token)
    assert attempt.status == AttemptStatus.BOUNCED
    assert attempt.error_message == "mailbox full"
