from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import require_roles
from ..modules.identity.roles import ROLE_MERCHANT
from ..modules.multivendor import multivendor_service

router = APIRouter(tags=["multivendor"])


class ToggleRequest(BaseModel):
    enabled: bool


class SubscribeRequest(BaseModel):
    planId: str = Field(..., min_length=1)
    walletId: str = Field(..., min_length=1)


@router.get("/plans")
def list_plans():
    return {"data": [asdict(p) for p in multivendor_service.PLANS.values()]}


@router.get("")
def get_settings(request: Request):
    user = require_roles(request, ROLE_MERCHANT)
    s = multivendor_service.get_settings(user.sub)
    return {
        "settings": s,
        "isActive": multivendor_service.is_active(s),
        "remainingTrialDays": multivendor_service.get_remaining_trial_days(s),
    }


@router.post("/trial")
def start_trial(request: Request):
    user = require_roles(request, ROLE_MERCHANT)
    return multivendor_service.start_trial(user.sub)


@router.post("/toggle")
def toggle(request: Request, body: ToggleRequest):
    user = require_roles(request, ROLE_MERCHANT)
    return multivendor_service.toggle(user.sub, body.enabled)


@router.post("/subscribe")
def subscribe(request: Request, body: SubscribeRequest):
    user = require_roles(request, ROLE_MERCHANT)
    return multivendor_service.subscribe_with_wallet(user.sub, body.planId, body.walletId)


@router.post("/cancel")
def cancel(request: Request):
    user = require_roles(request, ROLE_MERCHANT)
    return multivendor_service.cancel_subscription(user.sub)
