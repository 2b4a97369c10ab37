"""Core domain types shared by the detector, campaign scheduler and sweeper."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum as PyEnum


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the database stores naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================


class CartStatus(str, PyEnum):
    """Lifecycle state of an abandoned cart."""

    ACTIVE = "active"
    CONTACTED = "contacted"
    RECOVERED = "recovered"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in OPEN_STATUSES


OPEN_STATUSES = (CartStatus.ACTIVE, CartStatus.CONTACTED)


class RecoveryTier(str, PyEnum):
    """Escalation stages of the recovery email campaign."""

    EMAIL_1HR = "email_1hr"
    EMAIL_24HR = "email_24hr"
    EMAIL_72HR = "email_72hr"


class RecoveryMethod(str, PyEnum):
    """How an abandoned cart ended up recovered."""

    EMAIL_1HR = "email_1hr"
    EMAIL_24HR = "email_24hr"
    EMAIL_72HR = "email_72hr"
    MANUAL = "manual"
    ORGANIC = "organic"

    @classmethod
    def from_tier(cls, tier: RecoveryTier) -> "RecoveryMethod":
        return cls(tier.value)


class AttemptStatus(str, PyEnum):
    """Delivery state of a single recovery attempt.

    PENDING is held only while the email is in flight; the attempt row is
    inserted first so that concurrent schedulers cannot both send the tier.
    """

    PENDING = "pending"
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"


# =============================================================================
# Identity
# =============================================================================


class InvalidIdentityError(ValueError):
    """Raised when a cart identity has neither or both references."""


@dataclass(frozen=True)
class CartIdentity:
    """Anonymous session or authenticated user owning one shopping cart."""

    session_id: str | None = None
    user_id: str | None = None

    def __post_init__(self) -> None:
        # Empty strings come out of COALESCE'd storefront queries
        if self.session_id == "":
            object.__setattr__(self, "session_id", None)
        if self.user_id == "":
            object.__setattr__(self, "user_id", None)
        if (self.session_id is None) == (self.user_id is None):
            raise InvalidIdentityError(
                "cart identity needs exactly one of session_id or user_id"
            )

    @classmethod
    def for_session(cls, session_id: str) -> "CartIdentity":
        return cls(session_id=session_id)

    @classmethod
    def for_user(cls, user_id: str) -> "CartIdentity":
        return cls(user_id=user_id)

    @property
    def is_guest(self) -> bool:
        return self.session_id is not None

    @property
    def kind(self) -> str:
        return "session" if self.is_guest else "user"

    @property
    def reference(self) -> str:
        return self.session_id if self.session_id is not None else self.user_id  # type: ignore[return-value]

    def log_context(self) -> dict[str, str | None]:
        return {"session_id": self.session_id, "user_id": self.user_id}

    def __str__(self) -> str:
        return f"{self.kind}:{self.reference}"


# =============================================================================
# Time windows
# =============================================================================


@dataclass(frozen=True)
class TierWindow:
    """Send window of one recovery tier, relative to ``abandoned_at``.

    A cart abandoned at T is eligible while ``now`` is in
    ``[T + opens_after, T + closes_after)``.
    """

    tier: RecoveryTier
    opens_after: timedelta
    closes_after: timedelta

    def __post_init__(self) -> None:
        if self.closes_after <= self.opens_after:
            raise ValueError(f"{self.tier.value} window closes before it opens")

    @property
    def width(self) -> timedelta:
        return self.closes_after - self.opens_after

    def abandoned_at_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """Return ``(oldest_exclusive, newest_inclusive)`` for ``abandoned_at``."""
        return now - self.closes_after, now - self.opens_after

    def contains(self, abandoned_at: datetime, now: datetime) -> bool:
        age = now - abandoned_at
        return self.opens_after <= age < self.closes_after
