"""Outbound delivery of recovery emails.

The engine composes template-ready fields (customer name, line items,
tracking links, promotion code) and hands them to a provider; rendering is
the provider's job.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import httpx
import orjson
import structlog

from cart_recovery.config import Settings, get_settings
from cart_recovery.domain import RecoveryTier

logger = structlog.get_logger()


class EmailDeliveryError(Exception):
    """The provider rejected or could not accept a message."""


@dataclass
class RecoveryEmailItem:
    product_name: str
    quantity: int
    unit_price_cents: int
    total_price_cents: int
    product_image_url: str | None = None


@dataclass
class RecoveryEmail:
    """Everything a provider template needs for one recovery email."""

    to_email: str
    subject: str
    tier: RecoveryTier
    template_name: str
    customer_name: str
    cart_value_cents: int
    item_count: int
    abandoned_at: str
    tracking_token: str
    open_tracking_url: str
    recovery_url: str
    items: list[RecoveryEmailItem] = field(default_factory=list)
    promo_code: str | None = None
    promo_expires: str | None = None

    def template_data(self) -> dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        for key in ("to_email", "subject", "template_name"):
            data.pop(key)
        return data


class EmailSender(Protocol):
    async def send_email(self, message: RecoveryEmail) -> dict[str, Any]:
        """Deliver ``message``; return ``{"success": bool, ...}`` or raise."""
        ...

    async def aclose(self) -> None: ...


class MockEmailSender:
    """
    Mock email service for testing and development.

    Stores sent emails to filesystem for inspection instead of
    actually sending them.
    """

    def __init__(
        self,
        storage_path: str | None = None,
        from_email: str = "noreply@example-store.com",
        from_name: str = "The Store",
    ):
        """
        Initialize the mock email sender.

        Args:
            storage_path: Directory to store mock emails.
                         Defaults to /tmp/cart_recovery_mock_emails
            from_email: Sender email address
            from_name: Sender display name
        """
        self.storage_path = Path(storage_path or "/tmp/cart_recovery_mock_emails")
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.from_email = from_email
        self.from_name = from_name
        self.sent_emails: list[dict[str, Any]] = []

    async def send_email(self, message: RecoveryEmail) -> dict[str, Any]:
        """
        Simulate sending an email.

        Instead of actually sending, stores the email to the filesystem
        for later inspection during testing.

        Returns:
            dict: Simulated send result with message_id and status
        """
        message_id = message.tracking_token or str(uuid4())
        timestamp = datetime.now(timezone.utc)

        email_record = {
            "message_id": message_id,
            "to_email": message.to_email,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "subject": message.subject,
            "template_name": message.template_name,
            "template_data": message.template_data(),
            "sent_at": timestamp.isoformat(),
            "status": "sent",
        }

        self.sent_emails.append(email_record)

        filename = f"{timestamp.strftime('%Y%m%d_%H%M%S')}_{message_id}.json"
        filepath = self.storage_path / filename
        filepath.write_bytes(orjson.dumps(email_record, option=orjson.OPT_INDENT_2))

        logger.info(
            "Mock email sent",
            message_id=message_id,
            to_email=message.to_email,
            subject=message.subject,
            stored_at=str(filepath),
        )

        return {
            "success": True,
            "message_id": message_id,
            "status": "sent",
            "stored_at": str(filepath),
        }

    def get_sent_emails(
        self,
        limit: int = 50,
        to_email: str | None = None,
    ) -> list[dict[str, Any]]:
        """Retrieve recently sent mock emails, optionally for one recipient."""
        emails = self.sent_emails

        if to_email:
            emails = [e for e in emails if e["to_email"] == to_email]

        return emails[-limit:]

    def get_all_stored_emails(self) -> list[dict[str, Any]]:
        """Retrieve all emails stored on filesystem."""
        return [
            orjson.loads(filepath.read_bytes())
            for filepath in sorted(self.storage_path.glob("*.json"))
        ]

    def clear_stored_emails(self) -> int:
        """
        Clear all stored mock emails.

        Returns:
            int: Number of emails deleted
        """
        count = 0
        for filepath in self.storage_path.glob("*.json"):
            filepath.unlink()
            count += 1

        self.sent_emails.clear()
        logger.info("Cleared mock emails", count=count)

        return count

    async def aclose(self) -> None:
        return None


class SendGridEmailSender:
    """Sends recovery emails through SendGrid dynamic templates."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(timeout=settings.sendgrid_timeout_seconds)

    def _build_payload(self, message: RecoveryEmail) -> dict[str, Any]:
        template_id = self.settings.sendgrid_template_for(message.tier)
        if not template_id:
            raise EmailDeliveryError(f"No SendGrid template configured for {message.tier.value}")
        return {
            "personalizations": [
                {
                    "to": [{"email": message.to_email, "name": message.customer_name}],
                    "dynamic_template_data": {
                        **message.template_data(),
                        "subject": message.subject,
                    },
                }
            ],
            "from": {
                "email": self.settings.email_from_address,
                "name": self.settings.email_from_name,
            },
            "template_id": template_id,
            "custom_args": {"tracking_token": message.tracking_token},
            "tracking_settings": {
                "click_tracking": {"enable": False},
                "open_tracking": {"enable": False},
            },
        }

    async def send_email(self, message: RecoveryEmail) -> dict[str, Any]:
        payload = self._build_payload(message)
        try:
            response = await self.client.post(
                self.settings.sendgrid_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.sendgrid_api_key}"},
            )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"SendGrid request failed: {e}") from e

        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"SendGrid rejected message ({response.status_code}): {response.text[:500]}"
            )

        return {
            "success": True,
            "message_id": response.headers.get("X-Message-Id", message.tracking_token),
            "status": "sent",
        }

    async def aclose(self) -> None:
        await self.client.aclose()


def get_email_sender(settings: Settings | None = None) -> EmailSender:
    """Build the configured email sender."""
    settings = settings or get_settings()
    if settings.email_service == "sendgrid":
        return SendGridEmailSender(settings)
    return MockEmailSender(
        storage_path=settings.mock_email_storage_path,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )
