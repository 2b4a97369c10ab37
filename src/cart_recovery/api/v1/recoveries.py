"""Checkout-completion hook that closes open abandonments."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from cart_recovery.api.deps import get_repository
from cart_recovery.domain import CartIdentity, InvalidIdentityError, RecoveryMethod
from cart_recovery.services.repository import AbandonedCartRepository

router = APIRouter()


class MarkRecoveredRequest(BaseModel):
    """Identity whose checkout just completed."""

    session_id: str | None = Field(None, description="Anonymous session of a guest checkout")
    user_id: str | None = Field(None, description="Authenticated customer")
    method: RecoveryMethod | None = Field(
        None,
        description="Recovery attribution; inferred from the last delivered email when omitted",
    )


class MarkRecoveredResponse(BaseModel):
    recovered: bool
    abandoned_cart_id: int | None = None
    recovery_method: RecoveryMethod | None = None


@router.post("", response_model=MarkRecoveredResponse)
async def mark_recovered(
    request: MarkRecoveredRequest,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> MarkRecoveredResponse:
    """
    Mark the open abandoned cart of an identity as recovered.

    Exactly one of ``session_id`` or ``user_id`` must be given. Identities
    with nothing open are not an error; ``recovered`` is then false.
    """
    try:
        identity = CartIdentity(session_id=request.session_id, user_id=request.user_id)
    except InvalidIdentityError as e:
        raise HTTPException(status_code=400, detail=str(e))

    cart = await repository.mark_recovered(identity, method=request.method)
    if cart is None:
        return MarkRecoveredResponse(recovered=False)

    return MarkRecoveredResponse(
        recovered=True,
        abandoned_cart_id=cart.id,
        recovery_method=cart.recovery_method,
    )
