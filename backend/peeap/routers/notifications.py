from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import current_user, require_admin
from ..modules.notifications import notification_service

router = APIRouter(tags=["notifications"])


class DeviceRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    platform: str = Field(default="web", pattern="^(web|android|ios)$")


class PushRequest(BaseModel):
    userIds: list[str] = Field(..., min_length=1, max_length=1000)
    type: str = "promotional"
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)
    data: dict[str, Any] | None = None


@router.get("")
def list_notifications(request: Request, unread: bool = False, limit: int = 50, nextToken: str | None = None):
    user = current_user(request)
    return notification_service.list_notifications(user.sub, unread_only=unread, limit=limit, next_token=nextToken)


@router.post("/{notificationId}/read")
def mark_read(notificationId: str, request: Request):
    return notification_service.mark_read(current_user(request).sub, notificationId)


@router.post("/read-all")
def mark_all_read(request: Request):
    return {"updated": notification_service.mark_all_read(current_user(request).sub)}


@router.get("/preferences")
def get_preferences(request: Request):
    return notification_service.get_preferences(current_user(request).sub)


@router.put("/preferences")
def save_preferences(request: Request, body: dict[str, bool]):
    return notification_service.save_preferences(current_user(request).sub, body)


@router.post("/devices")
def register_device(request: Request, body: DeviceRequest):
    return notification_service.register_device(current_user(request).sub, body.token, body.platform)


@router.delete("/devices")
def unregister_device(request: Request, body: DeviceRequest):
    notification_service.unregister_device(current_user(request).sub, body.token)
    return {"ok": True}


@router.post("/push")
def send_push(request: Request, body: PushRequest):
    require_admin(request)
    return notification_service.send_push_to_users(body.userIds, body.type, body.title, body.body, body.data)
