from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter()


@router.get("/", tags=["health"])
def health():
    return {
        "message": "Peeap API",
        "version": "1.0.0",
        "status": "running",
        "environment": settings.normalized_environment,
        "dynamodb": "configured" if settings.ddb_table_name else "missing",
        "monime": "configured" if settings.monime_access_token else "missing",
        "push": "configured" if settings.fcm_server_key else "missing",
    }
