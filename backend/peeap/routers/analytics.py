from __future__ import annotations

from fastapi import APIRouter, Query, Request

from ..modules.analytics import monime_analytics
from ..modules.identity.access import require_admin
from ..settings import settings

router = APIRouter(tags=["analytics"])


@router.get("/monime/summary")
def monime_summary(request: Request, currency: str | None = None, refresh: bool = False):
    require_admin(request)
    return monime_analytics.get_summary(currency or settings.default_currency, use_cache=not refresh)


@router.get("/monime/daily")
def monime_daily(request: Request, days: int = Query(default=7, ge=1, le=90), currency: str | None = None):
    require_admin(request)
    return {"data": monime_analytics.get_daily_data(days, currency or settings.default_currency)}


@router.get("/monime/monthly")
def monime_monthly(request: Request, months: int = Query(default=6, ge=1, le=24), currency: str | None = None):
    require_admin(request)
    return {"data": monime_analytics.get_monthly_data(months, currency or settings.default_currency)}


@router.get("/monime/recent")
def monime_recent(request: Request, limit: int = Query(default=10, ge=1, le=100), currency: str | None = None):
    require_admin(request)
    return {"data": monime_analytics.get_recent_transactions(limit, currency)}
