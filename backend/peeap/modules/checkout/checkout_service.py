from __future__ import annotations

import hashlib
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import Forbidden, InvalidState, NotFound, UpstreamError, ValidationFailed
from ...infrastructure.monime.client import MonimeClient, MonimeError, get_monime_client
from ...infrastructure.monime.signature import verify_signature
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import businesses_repo, checkout_sessions_repo
from ...repositories.common import iso, now_iso, parse_iso
from ...settings import settings
from ..businesses import business_service
from ..mobile_money import mobile_money_service
from ..notifications import notification_service
from ..wallets import wallet_service

log = get_logger("checkout_service")

SESSION_TTL = timedelta(minutes=30)

_LEONE_ALIASES = ("NLE", "LE", "LEONE")


def normalize_currency(currency: str | None, amount: float) -> tuple[str, float]:
    """
    Map Leone spellings to SLE. Old-Leone (SLL) amounts are redenominated
    at 1000:1.
    """
    cur = str(currency or settings.default_currency).strip().upper()
    if cur in _LEONE_ALIASES:
        return "SLE", amount
    if cur == "SLL":
        return "SLE", to_money(amount / 1000)
    return cur, amount


def _session_id(business_id: str, idempotency_key: str | None) -> str:
    if idempotency_key:
        digest = hashlib.sha256(f"{business_id}:{idempotency_key}".encode("utf-8")).hexdigest()
        return f"cs_{digest[:32]}"
    return f"cs_{uuid.uuid4().hex}"


def _amount(value: Any) -> float:
    try:
        amt = to_money(float(value))
    except (TypeError, ValueError) as e:
        raise ValidationFailed("amount must be a number") from e
    if amt <= 0:
        raise ValidationFailed("amount must be greater than 0")
    return amt


def _checkout_url(session_id: str) -> str:
    return f"{settings.public_app_url.rstrip('/')}/checkout/pay/{session_id}"


def get_checkout_session(session_id: str) -> dict[str, Any]:
    s = checkout_sessions_repo.get_checkout(session_id)
    if not s:
        raise NotFound("Checkout session not found", code="checkout_not_found")
    return s


def public_view(session: dict[str, Any]) -> dict[str, Any]:
    """Fields a payer's browser may see."""
    keep = (
        "sessionId",
        "businessId",
        "merchantName",
        "amount",
        "currencyCode",
        "description",
        "status",
        "isTestMode",
        "paymentUrl",
        "expiresAt",
        "successUrl",
        "cancelUrl",
        "completedAt",
    )
    return {k: session.get(k) for k in keep}


def list_business_sessions(business_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    return checkout_sessions_repo.list_business_checkouts(business_id, limit=limit, next_token=next_token)


def create_checkout_session(
    business: dict[str, Any],
    *,
    amount: Any,
    currency: str | None = None,
    description: str | None = None,
    success_url: str | None = None,
    cancel_url: str | None = None,
    is_test_mode: bool | None = None,
    idempotency_key: str | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    payment_method: str | None = None,
    reference: str | None = None,
    monime: MonimeClient | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Open a hosted-payment session for a business.

    Live sessions are gated by the business approval state and get a Monime
    redirect URL; test sessions never touch the payment rail. Reusing an
    idempotency key returns the session created the first time.
    """
    business_id = str(business.get("businessId") or "")
    if business.get("status") == "SUSPENDED":
        raise Forbidden("Business is suspended", code="business_suspended")
    test_mode = (not business.get("isLiveMode")) if is_test_mode is None else bool(is_test_mode)
    if not test_mode:
        check = business_service.can_process_live_transaction(business)
        if not check.get("allowed"):
            raise Forbidden(str(check.get("reason") or "Live payments are not allowed"), code="live_not_allowed")

    currency_code, amt = normalize_currency(currency, _amount(amount))
    sid = _session_id(business_id, idempotency_key)
    if idempotency_key:
        existing = checkout_sessions_repo.get_checkout(sid)
        if existing:
            return existing

    now = now or datetime.now(timezone.utc)
    created = iso(now)
    item: dict[str, Any] = {
        **checkout_sessions_repo.checkout_key(sid),
        "entityType": "CheckoutSession",
        "sessionId": sid,
        "businessId": business_id,
        "merchantId": business.get("merchantId"),
        "merchantName": business.get("name"),
        "amount": amt,
        "currencyCode": currency_code,
        "description": description,
        "status": "OPEN",
        "isTestMode": test_mode,
        "paymentMethod": payment_method,
        "successUrl": success_url or f"{settings.public_app_url.rstrip('/')}/checkout/success",
        "cancelUrl": cancel_url or f"{settings.public_app_url.rstrip('/')}/checkout/cancel",
        "paymentUrl": _checkout_url(sid),
        "idempotencyKey": idempotency_key,
        "metadata": {
            "reference": reference,
            "isTestMode": test_mode,
            "customerEmail": customer_email,
            "customerPhone": customer_phone,
            "paymentMethod": payment_method,
        },
        "expiresAt": iso(now + SESSION_TTL),
        "createdAt": created,
        "updatedAt": created,
        "gsi1pk": f"BUSINESS_CHECKOUTS#{business_id}",
        "gsi1sk": f"{created}#{sid}",
        **checkout_sessions_repo.status_index("OPEN", created, sid),
    }
    try:
        session = checkout_sessions_repo.put_checkout(item)
    except DdbConflict:
        return get_checkout_session(sid)
    log.info("checkout_session_created", session_id=sid, business_id=business_id, test_mode=test_mode)

    if test_mode:
        return session

    client = monime or get_monime_client()
    try:
        hosted = client.create_hosted_checkout(
            session_id=sid,
            amount=amt,
            currency=currency_code,
            description=description,
            merchant_name=str(business.get("name") or "Merchant"),
            merchant_id=business.get("merchantId"),
            success_url=session["successUrl"],
            cancel_url=session["cancelUrl"],
        )
    except MonimeError as e:
        checkout_sessions_repo.transition_checkout(
            sid,
            from_status="OPEN",
            to_status="CANCELLED",
            at=now_iso(),
            patch={"failureReason": e.message},
        )
        raise UpstreamError(e.message, code="monime_checkout_failed", status=e.status) from e

    return (
        checkout_sessions_repo.update_checkout(
            sid,
            {
                "paymentUrl": hosted.get("paymentUrl") or session["paymentUrl"],
                "monimeSessionId": hosted.get("monimeSessionId"),
            },
        )
        or session
    )


def create_checkout_session_with_public_key(public_key: str, data: dict[str, Any], **kw: Any) -> dict[str, Any]:
    key = str(public_key or "").strip()
    if not key.startswith(("pk_live_", "pk_test_")):
        raise ValidationFailed("Invalid public key", code="invalid_public_key")
    business = businesses_repo.find_business_by_public_key(key)
    if not business:
        raise NotFound("Business not found for this key", code="business_not_found")
    is_live = key.startswith("pk_live_")
    if is_live and business.get("approvalStatus") == "PENDING":
        limit = int(business.get("trialLiveTransactionLimit") or business_service.DEFAULT_TRIAL_LIVE_TRANSACTION_LIMIT)
        used = int(business.get("trialLiveTransactionsUsed") or 0)
        if used >= limit:
            raise Forbidden(
                f"Trial limit reached. You have used {limit} trial live transactions. "
                "Please wait for admin approval.",
                code="trial_exhausted",
            )
    return create_checkout_session(
        business,
        amount=data.get("amount"),
        currency=data.get("currency"),
        description=data.get("description"),
        success_url=data.get("successUrl"),
        cancel_url=data.get("cancelUrl"),
        is_test_mode=not is_live,
        idempotency_key=data.get("idempotencyKey"),
        customer_email=data.get("customerEmail"),
        customer_phone=data.get("customerPhone"),
        payment_method=data.get("paymentMethod"),
        reference=data.get("reference"),
        **kw,
    )


def _is_expired(session: dict[str, Any], now: datetime) -> bool:
    exp = parse_iso(session.get("expiresAt"))
    return exp is not None and exp <= now


def _needs_credit(session: dict[str, Any]) -> bool:
    # Sandbox and counter-confirmed sessions never move wallet funds.
    settlement = session.get("settlement") or ("sandbox" if session.get("isTestMode") else "wallet")
    return settlement == "wallet" and not session.get("transactionId")


def _settle(session: dict[str, Any]) -> dict[str, Any]:
    """Credit the merchant for a COMPLETE live session. Safe to repeat."""
    sid = str(session["sessionId"])
    wallet = wallet_service.get_or_create_wallet(
        str(session.get("merchantId")),
        currency=str(session.get("currencyCode") or settings.default_currency),
        wallet_type="merchant",
    )
    txn = wallet_service.credit(
        wallet["walletId"],
        session.get("amount"),
        type="receive",
        description=session.get("description") or f"Checkout payment {sid}",
        reference=f"QR-{int(time.time() * 1000)}-{secrets.token_hex(5)[:9].upper()}",
        metadata={
            "checkoutSessionId": sid,
            "merchantId": session.get("merchantId"),
            "merchantName": session.get("merchantName"),
            "paymentMethod": session.get("paymentMethod"),
            "monimeReference": session.get("monimeReference"),
        },
        transaction_id=f"txn_{sid}",
    )
    meta = {**(session.get("metadata") or {}), "transactionRef": txn.get("reference")}
    return (
        checkout_sessions_repo.update_checkout(
            sid, {"transactionId": txn.get("transactionId"), "walletId": wallet["walletId"], "metadata": meta}
        )
        or session
    )


def _finish_completed(session: dict[str, Any]) -> dict[str, Any]:
    return _settle(session) if _needs_credit(session) else session


def _mark_complete(
    session_id: str,
    *,
    settlement: str,
    payment_method: str | None,
    monime_reference: str | None,
    now: datetime | None,
) -> tuple[dict[str, Any], bool]:
    """OPEN -> COMPLETE. Returns the session and whether this call made the transition."""
    now = now or datetime.now(timezone.utc)
    session = get_checkout_session(session_id)
    status = session.get("status")
    if status == "COMPLETE":
        return _finish_completed(session), False
    if status != "OPEN":
        raise InvalidState(f"Checkout session is {status}", code="checkout_not_open")
    if _is_expired(session, now):
        expire_checkout_session(session_id, now=now)
        raise InvalidState("Session expired", code="session_expired")

    at = iso(now)
    try:
        session = checkout_sessions_repo.transition_checkout(
            session_id,
            from_status="OPEN",
            to_status="COMPLETE",
            at=at,
            patch={
                "completedAt": at,
                "settlement": settlement,
                "paymentMethod": payment_method or session.get("paymentMethod") or "mobile_money",
                "monimeReference": monime_reference,
            },
        ) or get_checkout_session(session_id)
    except DdbConflict:
        current = get_checkout_session(session_id)
        if current.get("status") == "COMPLETE":
            return _finish_completed(current), False
        raise InvalidState(f"Checkout session is {current.get('status')}", code="checkout_not_open")
    return session, True


def complete_checkout_session(
    session_id: str,
    *,
    payment_method: str | None = None,
    monime_reference: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Complete a paid session.

    Live sessions credit the merchant wallet exactly once. Sandbox sessions
    are only marked COMPLETE.
    """
    current = get_checkout_session(session_id)
    settlement = "sandbox" if current.get("isTestMode") else "wallet"
    session, transitioned = _mark_complete(
        session_id,
        settlement=settlement,
        payment_method=payment_method,
        monime_reference=monime_reference,
        now=now,
    )
    if not transitioned:
        return session
    if settlement == "sandbox":
        log.info("checkout_session_completed", session_id=session_id, settlement=settlement)
        return session

    session = _settle(session)
    business_service.increment_trial_transaction_count(str(session.get("businessId")))
    if session.get("merchantId"):
        notification_service.notify(
            str(session["merchantId"]),
            "merchant_sale",
            "New Sale",
            f"You received {session.get('currencyCode')} {float(session.get('amount') or 0):,.2f}",
            {"checkoutSessionId": session_id},
        )
    log.info(
        "checkout_session_completed",
        session_id=session_id,
        business_id=session.get("businessId"),
        settlement=settlement,
        amount=session.get("amount"),
        currency=session.get("currencyCode"),
    )
    return session


def record_offline_payment(
    session_id: str, *, payment_method: str | None = None, now: datetime | None = None
) -> dict[str, Any]:
    """
    Close a session the merchant was paid for outside Peeap (cash at the
    counter). No wallet is credited and analytics ignore it.
    """
    session, transitioned = _mark_complete(
        session_id,
        settlement="offline",
        payment_method=payment_method or "cash",
        monime_reference=None,
        now=now,
    )
    if transitioned:
        log.info("checkout_session_completed", session_id=session_id, settlement="offline")
    return session


def _close(session_id: str, to_status: str, now: datetime | None) -> dict[str, Any]:
    session = get_checkout_session(session_id)
    if session.get("status") == to_status:
        return session
    if session.get("status") != "OPEN":
        raise InvalidState(f"Checkout session is {session.get('status')}", code="checkout_not_open")
    at = iso(now or datetime.now(timezone.utc))
    try:
        updated = checkout_sessions_repo.transition_checkout(
            session_id, from_status="OPEN", to_status=to_status, at=at
        )
    except DdbConflict as e:
        raise InvalidState("Checkout session changed concurrently", code="checkout_conflict") from e
    log.info("checkout_session_closed", session_id=session_id, status=to_status)
    return updated or get_checkout_session(session_id)


def expire_checkout_session(session_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    return _close(session_id, "EXPIRED", now)


def cancel_checkout_session(session_id: str) -> dict[str, Any]:
    return _close(session_id, "CANCELLED", None)


# -----------------------------
# Monime webhooks
# -----------------------------


def _event_name(body: dict[str, Any]) -> str:
    ev = body.get("event")
    if isinstance(ev, dict):
        return str(ev.get("name") or "")
    return str(ev or body.get("type") or "")


def _peeap_session_id(data: dict[str, Any]) -> str | None:
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    sid = meta.get("peeapSessionId") or data.get("reference")
    return str(sid) if sid and str(sid).startswith("cs_") else None


def handle_monime_webhook(raw_body: bytes, signature_header: str | None) -> dict[str, Any]:
    """
    Verify and dispatch a Monime event.

    `checkout_session.completed` completes a merchant checkout or a wallet
    deposit; `payout.*` events settle withdrawals.
    """
    try:
        body = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise ValidationFailed("Webhook body is not valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationFailed("Webhook body must be an object")
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    if not verify_signature(raw_body, signature_header, settings.monime_webhook_secret):
        log.warning("monime_webhook_bad_signature", secret_configured=bool(settings.monime_webhook_secret))
        raise Forbidden("Invalid webhook signature", code="bad_signature")

    name = _event_name(body)
    log.info("monime_webhook_received", event_name=name, monime_id=data.get("id"))
    if name == "checkout_session.completed":
        sid = _peeap_session_id(data)
        if sid:
            session = complete_checkout_session(sid, monime_reference=data.get("id"))
            return {"handled": True, "sessionId": session.get("sessionId")}
        txn = mobile_money_service.complete_deposit_from_webhook(data)
        return {"handled": txn is not None, "monimeTxnId": (txn or {}).get("monimeTxnId")}
    if name in ("payout.completed", "payout.failed"):
        payout = mobile_money_service.settle_payout_from_webhook(data, succeeded=name == "payout.completed")
        return {"handled": payout is not None, "payoutId": (payout or {}).get("payoutId")}
    return {"handled": False, "event": name}
