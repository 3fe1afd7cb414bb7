from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.cards import card_service
from ..modules.identity.access import current_user, require_roles
from ..modules.identity.roles import ROLE_AGENT, ROLE_MERCHANT
from ._guards import ensure_owner, owned_wallet

router = APIRouter(tags=["cards"])


class IssueCardRequest(BaseModel):
    walletId: str = Field(..., min_length=1)
    cardType: str = Field(default="virtual", pattern="^(virtual|physical)$")
    tier: str = "basic"
    cardholderName: str | None = Field(default=None, max_length=120)


class LimitsRequest(BaseModel):
    dailyLimit: float | None = None
    monthlyLimit: float | None = None
    perTransactionLimit: float | None = None


class FeaturesRequest(BaseModel):
    nfc: bool | None = None
    online: bool | None = None
    international: bool | None = None
    atm: bool | None = None


class BlockRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class AuthorizeRequest(BaseModel):
    cardNumber: str = Field(..., min_length=12, max_length=23)
    amount: float = Field(..., gt=0)


def _my_card(card_id: str, request: Request) -> dict:
    return ensure_owner(card_service.get_card(card_id), current_user(request))


@router.get("")
def list_cards(request: Request):
    return {"data": card_service.list_user_cards(current_user(request).sub)}


@router.post("")
def issue_card(request: Request, body: IssueCardRequest):
    user = current_user(request)
    owned_wallet(body.walletId, user)
    return card_service.issue_card(
        user_id=user.sub,
        wallet_id=body.walletId,
        card_type=body.cardType,
        tier=body.tier,
        cardholder_name=body.cardholderName,
    )


@router.post("/authorize")
def authorize(request: Request, body: AuthorizeRequest):
    # Terminals (merchants, agents) check a presented card before charging it.
    require_roles(request, ROLE_MERCHANT, ROLE_AGENT)
    return card_service.authorize_by_number(body.cardNumber, body.amount)


@router.get("/{cardId}")
def get_card(cardId: str, request: Request):
    return _my_card(cardId, request)


@router.post("/{cardId}/activate")
def activate(cardId: str, request: Request):
    _my_card(cardId, request)
    return card_service.activate_card(cardId)


@router.post("/{cardId}/freeze")
def freeze(cardId: str, request: Request):
    _my_card(cardId, request)
    return card_service.freeze_card(cardId)


@router.post("/{cardId}/unfreeze")
def unfreeze(cardId: str, request: Request):
    _my_card(cardId, request)
    return card_service.unfreeze_card(cardId)


@router.post("/{cardId}/block")
def block(cardId: str, request: Request, body: BlockRequest):
    _my_card(cardId, request)
    return card_service.block_card(cardId, reason=body.reason, blocked_by=current_user(request).sub)


@router.post("/{cardId}/cancel")
def cancel(cardId: str, request: Request, body: BlockRequest):
    _my_card(cardId, request)
    return card_service.cancel_card(cardId, reason=body.reason)


@router.put("/{cardId}/limits")
def update_limits(cardId: str, request: Request, body: LimitsRequest):
    _my_card(cardId, request)
    return card_service.update_limits(
        cardId,
        daily_limit=body.dailyLimit,
        monthly_limit=body.monthlyLimit,
        per_transaction_limit=body.perTransactionLimit,
    )


@router.put("/{cardId}/features")
def update_features(cardId: str, request: Request, body: FeaturesRequest):
    _my_card(cardId, request)
    return card_service.update_features(cardId, **body.model_dump())
