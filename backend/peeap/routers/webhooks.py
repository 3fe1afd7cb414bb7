from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from ..modules.checkout import checkout_service

router = APIRouter(tags=["webhooks"])


async def _raw_body(request: Request) -> bytes:
    return await request.body()


# Sync on purpose: FastAPI runs it in the threadpool, off the event loop.
@router.post("/monime")
def monime_webhook(
    raw: bytes = Depends(_raw_body),
    monime_signature: str | None = Header(default=None),
):
    return checkout_service.handle_monime_webhook(raw, monime_signature)
