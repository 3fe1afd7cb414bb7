from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.analytics import admin_dashboard
from ..modules.businesses import business_service
from ..modules.cards import card_service
from ..modules.identity.access import require_admin
from ..modules.users import user_service
from ..modules.wallets import transaction_service, wallet_service

router = APIRouter(tags=["admin"])


class SuspendRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class ApprovalRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)


class BlockCardRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


@router.get("/overview")
def overview(request: Request):
    require_admin(request)
    return admin_dashboard.platform_overview()


# --- users ---


@router.get("/users")
def list_users(request: Request, role: str | None = None, status: str | None = None, search: str | None = None):
    require_admin(request)
    return {"data": user_service.list_users(role=role, status=status, search=search)}


@router.get("/users/counts")
def user_counts(request: Request):
    require_admin(request)
    return user_service.user_counts()


@router.get("/users/{userId}")
def get_user(userId: str, request: Request):
    require_admin(request)
    return {"user": user_service.get_user(userId), "wallets": wallet_service.list_user_wallets(userId)}


@router.post("/users/{userId}/suspend")
def suspend_user(userId: str, request: Request, body: SuspendRequest):
    admin = require_admin(request)
    return user_service.suspend_user(userId, reason=body.reason, admin_id=admin.sub)


@router.post("/users/{userId}/reactivate")
def reactivate_user(userId: str, request: Request):
    admin = require_admin(request)
    return user_service.reactivate_user(userId, admin_id=admin.sub)


# --- businesses ---


@router.get("/businesses")
def list_businesses(
    request: Request, approvalStatus: str | None = None, status: str | None = None, search: str | None = None
):
    require_admin(request)
    return {
        "data": business_service.get_all_businesses(approval_status=approvalStatus, status=status, search=search)
    }


@router.get("/businesses/counts")
def business_counts(request: Request):
    require_admin(request)
    return business_service.business_counts()


@router.post("/businesses/{businessId}/approve")
def approve_business(businessId: str, request: Request, body: ApprovalRequest):
    admin = require_admin(request)
    return business_service.approve_business(businessId, admin.sub, body.notes)


@router.post("/businesses/{businessId}/reject")
def reject_business(businessId: str, request: Request, body: RejectRequest):
    admin = require_admin(request)
    return business_service.reject_business(businessId, admin.sub, body.notes)


@router.post("/businesses/{businessId}/suspend")
def suspend_business(businessId: str, request: Request, body: ApprovalRequest):
    admin = require_admin(request)
    return business_service.suspend_business(businessId, admin.sub, body.notes)


@router.post("/businesses/{businessId}/reactivate")
def reactivate_business(businessId: str, request: Request, body: ApprovalRequest):
    admin = require_admin(request)
    return business_service.reactivate_business(businessId, admin.sub, body.notes)


# --- cards & wallets ---


@router.get("/cards")
def list_cards(request: Request, status: str | None = None, type: str | None = None, search: str | None = None):
    require_admin(request)
    return {"data": card_service.list_all_cards(status=status, card_type=type, search=search)}


@router.get("/cards/stats")
def card_stats(request: Request):
    require_admin(request)
    return card_service.card_stats()


@router.post("/cards/{cardId}/block")
def block_card(cardId: str, request: Request, body: BlockCardRequest):
    admin = require_admin(request)
    return card_service.block_card(cardId, reason=body.reason, blocked_by=admin.sub)


@router.post("/cards/{cardId}/unblock")
def unblock_card(cardId: str, request: Request):
    require_admin(request)
    return card_service.unblock_card(cardId)


@router.post("/wallets/{walletId}/freeze")
def freeze_wallet(walletId: str, request: Request):
    require_admin(request)
    return wallet_service.set_wallet_status(walletId, "FROZEN")


@router.post("/wallets/{walletId}/unfreeze")
def unfreeze_wallet(walletId: str, request: Request):
    require_admin(request)
    return wallet_service.set_wallet_status(walletId, "ACTIVE")


# --- transactions ---


@router.get("/transactions")
def list_transactions(
    request: Request,
    type: str | None = None,
    status: str | None = None,
    search: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 200,
):
    require_admin(request)
    return {
        "data": transaction_service.list_platform_transactions(
            type=type, status=status, search=search, start=start, end=end, limit=limit
        )
    }


@router.get("/transactions/stats")
def transaction_stats(request: Request, start: datetime | None = None, end: datetime | None = None):
    require_admin(request)
    return transaction_service.transaction_stats(start, end)
