from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.businesses import business_service
from ..modules.checkout import checkout_service
from ..modules.identity.access import current_user, require_roles
from ..modules.identity.roles import ROLE_MERCHANT
from ._guards import owned_business

router = APIRouter(tags=["businesses"])


class CreateBusinessRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    categoryId: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None
    websiteUrl: str | None = None
    logoUrl: str | None = None


class UpdateBusinessRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    categoryId: str | None = None
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    websiteUrl: str | None = None
    logoUrl: str | None = None
    webhookUrl: str | None = None
    webhookEvents: list[str] | None = None
    settlementSchedule: str | None = None
    autoSettlement: bool | None = None


class LiveModeRequest(BaseModel):
    isLive: bool


class RegenerateKeysRequest(BaseModel):
    keyType: str = Field(..., pattern="^(live|test)$")


@router.get("")
def list_my_businesses(request: Request):
    return {"data": business_service.get_my_businesses(current_user(request).sub)}


@router.post("")
def create_business(request: Request, body: CreateBusinessRequest):
    user = require_roles(request, ROLE_MERCHANT)
    return business_service.create_business(user.sub, body.model_dump(exclude_none=True))


@router.get("/{businessId}")
def get_business(businessId: str, request: Request):
    business = owned_business(businessId, current_user(request))
    return {**business, "limits": business_service.get_transaction_limits_info(business)}


@router.put("/{businessId}")
def update_business(businessId: str, request: Request, body: UpdateBusinessRequest):
    owned_business(businessId, current_user(request))
    return business_service.update_business(businessId, body.model_dump(exclude_none=True))


@router.post("/{businessId}/live-mode")
def toggle_live_mode(businessId: str, request: Request, body: LiveModeRequest):
    owned_business(businessId, current_user(request))
    return business_service.toggle_live_mode(businessId, body.isLive)


@router.get("/{businessId}/live-check")
def live_check(businessId: str, request: Request):
    business = owned_business(businessId, current_user(request))
    return business_service.can_process_live_transaction(business)


@router.post("/{businessId}/api-keys")
def regenerate_api_keys(businessId: str, request: Request, body: RegenerateKeysRequest):
    owned_business(businessId, current_user(request))
    return business_service.regenerate_api_keys(businessId, body.keyType)


@router.post("/{businessId}/webhook-secret")
def regenerate_webhook_secret(businessId: str, request: Request):
    owned_business(businessId, current_user(request))
    return business_service.regenerate_webhook_secret(businessId)


@router.get("/{businessId}/checkout-sessions")
def list_checkout_sessions(businessId: str, request: Request, limit: int = 50, nextToken: str | None = None):
    owned_business(businessId, current_user(request))
    return checkout_service.list_business_sessions(businessId, limit=limit, next_token=nextToken)


@router.delete("/{businessId}")
def delete_business(businessId: str, request: Request):
    owned_business(businessId, current_user(request))
    business_service.delete_business(businessId)
    return {"ok": True}
