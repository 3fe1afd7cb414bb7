from __future__ import annotations

from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import Forbidden, InvalidState, NotFound, UpstreamError, ValidationFailed
from ...infrastructure.monime.client import MonimeClient, MonimeError, get_monime_client
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import monime_transactions_repo, payouts_repo
from ...repositories.common import new_id, now_iso
from ...settings import settings
from ..notifications import notification_service
from ..wallets import wallet_service

log = get_logger("mobile_money_service")

# Monime checkout / payout states that end a pending transfer.
_MONIME_DONE = ("completed", "succeeded", "success")
_MONIME_FAILED = ("failed", "cancelled", "expired")


def _owned_wallet(user_id: str, wallet_id: str) -> dict[str, Any]:
    wallet = wallet_service.get_wallet(wallet_id)
    if wallet.get("userId") != user_id:
        raise Forbidden("Wallet does not belong to you", code="wallet_not_owned")
    if wallet.get("status") != "ACTIVE":
        raise InvalidState("Wallet is frozen", code="wallet_frozen")
    return wallet


def _amount(value: Any) -> float:
    try:
        amt = to_money(float(value))
    except (TypeError, ValueError) as e:
        raise ValidationFailed("amount must be a number") from e
    if amt <= 0:
        raise ValidationFailed("amount must be greater than 0")
    return amt


def list_providers(country: str = "SL", *, monime: MonimeClient | None = None) -> list[dict[str, Any]]:
    try:
        return (monime or get_monime_client()).list_mobile_money_providers(country)
    except MonimeError as e:
        raise UpstreamError(e.message, code="monime_unavailable", status=e.status) from e


# -----------------------------
# Deposits
# -----------------------------


def start_deposit(
    user_id: str,
    wallet_id: str,
    amount: Any,
    *,
    success_url: str | None = None,
    cancel_url: str | None = None,
    monime: MonimeClient | None = None,
) -> dict[str, Any]:
    """Create a Monime checkout that tops up `wallet_id` once paid."""
    wallet = _owned_wallet(user_id, wallet_id)
    amt = _amount(amount)
    currency = str(wallet.get("currency") or settings.default_currency)
    txn_id = new_id("dep")
    base = settings.public_app_url.rstrip("/")
    try:
        hosted = (monime or get_monime_client()).create_deposit_checkout(
            reference=txn_id,
            wallet_id=wallet_id,
            user_id=user_id,
            amount=amt,
            currency=currency,
            success_url=success_url or f"{base}/wallet/deposit/success?ref={txn_id}",
            cancel_url=cancel_url or f"{base}/wallet/deposit/cancel?ref={txn_id}",
        )
    except MonimeError as e:
        raise UpstreamError(e.message, code="monime_checkout_failed", status=e.status) from e

    record = monime_transactions_repo.put_monime_txn(
        monime_transactions_repo.build_monime_txn_item(
            txn_id=txn_id,
            type="DEPOSIT",
            user_id=user_id,
            wallet_id=wallet_id,
            amount=amt,
            currency_code=currency,
            created_at=now_iso(),
            monime_reference=hosted.get("monimeSessionId"),
        )
    )
    log.info("deposit_started", monime_txn_id=txn_id, wallet_id=wallet_id, amount=amt)
    return {**record, "paymentUrl": hosted.get("paymentUrl"), "expiresAt": hosted.get("expiresAt")}


def get_deposit(txn_id: str) -> dict[str, Any]:
    txn = monime_transactions_repo.get_monime_txn(txn_id)
    if not txn or txn.get("type") != "DEPOSIT":
        raise NotFound("Deposit not found", code="deposit_not_found")
    return txn


def complete_deposit(txn_id: str) -> dict[str, Any]:
    """Credit the wallet for a paid deposit. Safe to call more than once."""
    txn = get_deposit(txn_id)
    if txn.get("status") == "COMPLETED":
        return txn
    if txn.get("status") != "PENDING":
        raise InvalidState(f"Deposit is {txn.get('status')}", code="deposit_not_pending")

    ledger = wallet_service.credit(
        str(txn["walletId"]),
        txn.get("amount"),
        type="deposit",
        description="Mobile money deposit",
        reference=str(txn_id).upper(),
        metadata={"monimeTxnId": txn_id, "monimeReference": txn.get("monimeReference")},
        transaction_id=f"txn_{txn_id}",
    )
    try:
        updated = monime_transactions_repo.update_monime_txn(
            txn_id,
            {"status": "COMPLETED", "transactionId": ledger.get("transactionId"), "completedAt": now_iso()},
            expected={"status": "PENDING"},
        )
    except DdbConflict:
        return get_deposit(txn_id)
    notification_service.notify(
        str(txn["userId"]),
        "payment_received",
        "Deposit received",
        f"{txn.get('currencyCode')} {float(txn.get('amount') or 0):,.2f} was added to your wallet",
        {"walletId": txn.get("walletId")},
    )
    log.info("deposit_completed", monime_txn_id=txn_id, amount=txn.get("amount"))
    return updated or get_deposit(txn_id)


def fail_deposit(txn_id: str, reason: str) -> dict[str, Any]:
    txn = get_deposit(txn_id)
    if txn.get("status") != "PENDING":
        return txn
    try:
        updated = monime_transactions_repo.update_monime_txn(
            txn_id, {"status": "FAILED", "failureReason": reason}, expected={"status": "PENDING"}
        )
    except DdbConflict:
        return get_deposit(txn_id)
    log.info("deposit_failed", monime_txn_id=txn_id, reason=reason)
    return updated or get_deposit(txn_id)


def verify_deposit(user_id: str, txn_id: str, *, monime: MonimeClient | None = None) -> dict[str, Any]:
    """Poll Monime for a pending deposit, for when the webhook has not arrived."""
    txn = get_deposit(txn_id)
    if txn.get("userId") != user_id:
        raise Forbidden("Deposit does not belong to you", code="deposit_not_owned")
    if txn.get("status") != "PENDING" or not txn.get("monimeReference"):
        return txn
    try:
        remote = (monime or get_monime_client()).get_checkout_session(str(txn["monimeReference"]))
    except MonimeError as e:
        raise UpstreamError(e.message, code="monime_unavailable", status=e.status) from e
    status = str(remote.get("status") or "").lower()
    if status in _MONIME_DONE:
        return complete_deposit(txn_id)
    if status in _MONIME_FAILED:
        return fail_deposit(txn_id, f"Monime checkout {status}")
    return txn


def complete_deposit_from_webhook(data: dict[str, Any]) -> dict[str, Any] | None:
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    if meta.get("type") != "deposit":
        return None
    ref = str(data.get("reference") or "")
    if not ref:
        log.warning("deposit_webhook_missing_reference", monime_id=data.get("id"))
        return None
    return complete_deposit(ref)


# -----------------------------
# Withdrawals (payouts)
# -----------------------------


def get_payout(payout_id: str) -> dict[str, Any]:
    p = payouts_repo.get_payout(payout_id)
    if not p:
        raise NotFound("Payout not found", code="payout_not_found")
    return p


def list_user_payouts(user_id: str) -> list[dict[str, Any]]:
    return payouts_repo.list_user_payouts(user_id)


def withdraw_to_mobile_money(
    user_id: str,
    wallet_id: str,
    amount: Any,
    *,
    phone_number: str,
    provider_id: str,
    description: str | None = None,
    monime: MonimeClient | None = None,
) -> dict[str, Any]:
    """
    Debit the wallet and pay the amount out to a mobile-money number.

    The payout record is written before Monime is called so an early
    `payout.*` webhook can settle it. A definite rejection refunds the debit
    and raises UpstreamError. A timeout or 5xx leaves the payout
    `processing` without a refund; `refresh_payout` or the webhook settles it.
    """
    wallet = _owned_wallet(user_id, wallet_id)
    amt = _amount(amount)
    phone = str(phone_number or "").strip()
    if not phone or not str(provider_id or "").strip():
        raise ValidationFailed("phone_number and provider_id are required")
    currency = str(wallet.get("currency") or settings.default_currency)

    payout_id = new_id("po")
    now = now_iso()
    wallet_service.debit(
        wallet_id,
        amt,
        type="withdrawal",
        description=description or f"Withdrawal to {phone}",
        reference=payout_id.upper(),
        metadata={"payoutId": payout_id, "phoneNumber": phone, "provider": provider_id},
        transaction_id=f"txn_{payout_id}",
    )
    payouts_repo.put_payout(
        payouts_repo.build_payout_item(
            payout_id=payout_id,
            user_id=user_id,
            wallet_id=wallet_id,
            amount=amt,
            currency=currency,
            destination={"type": "momo", "providerId": provider_id, "phoneNumber": phone},
            created_at=now,
            monime_txn_id=payout_id,
        )
    )
    monime_transactions_repo.put_monime_txn(
        monime_transactions_repo.build_monime_txn_item(
            txn_id=payout_id,
            type="WITHDRAWAL",
            user_id=user_id,
            wallet_id=wallet_id,
            amount=amt,
            currency_code=currency,
            created_at=now,
            phone_number=phone,
            provider=provider_id,
        )
    )
    return _submit_payout(get_payout(payout_id), description=description, monime=monime)


def _submit_payout(
    payout: dict[str, Any], *, description: str | None = None, monime: MonimeClient | None = None
) -> dict[str, Any]:
    payout_id = str(payout["payoutId"])
    dest = payout.get("destination") or {}
    try:
        sent = (monime or get_monime_client()).send_to_mobile_money(
            amount=float(payout.get("amount") or 0),
            currency=str(payout.get("currency") or settings.default_currency),
            phone_number=str(dest.get("phoneNumber") or ""),
            provider_id=str(dest.get("providerId") or ""),
            user_id=str(payout.get("userId")),
            wallet_id=str(payout.get("walletId")),
            description=description,
            reference=payout_id,
        )
    except MonimeError as e:
        if e.is_ambiguous:
            log.warning("withdrawal_outcome_unknown", payout_id=payout_id, code=e.code, status=e.status)
            return _mark_processing(payout_id, {"lastError": e.message})
        log.warning("withdrawal_rejected", payout_id=payout_id, code=e.code, status=e.status)
        settle_payout(payout_id, succeeded=False, reason=e.message)
        raise UpstreamError(e.message, code="monime_payout_failed", status=e.status) from e

    fee = sent.get("totalFee") or 0.0
    monime_transactions_repo.update_monime_txn(payout_id, {"monimeReference": sent.get("payoutId"), "fee": fee})
    saved = _mark_processing(payout_id, {"monimePayoutId": sent.get("payoutId"), "fee": fee, "lastError": None})
    log.info("withdrawal_submitted", payout_id=payout_id, monime_payout_id=sent.get("payoutId"))
    return saved


def _mark_processing(payout_id: str, patch: dict[str, Any]) -> dict[str, Any]:
    # A webhook may already have settled the payout; never move it back.
    try:
        updated = payouts_repo.update_payout(
            payout_id, {**patch, "status": "processing"}, expected={"status": ("pending", "processing")}
        )
    except DdbConflict:
        updated = payouts_repo.update_payout(payout_id, patch)
    return updated or get_payout(payout_id)


def settle_payout(payout_id: str, *, succeeded: bool, reason: str | None = None) -> dict[str, Any]:
    """Finish a processing payout; a failed one refunds the wallet."""
    payout = get_payout(payout_id)
    if payout.get("status") in ("completed", "failed"):
        return payout
    status = "completed" if succeeded else "failed"
    patch: dict[str, Any] = {"status": status, "settledAt": now_iso()}
    if reason:
        patch["failureReason"] = reason
    try:
        updated = payouts_repo.update_payout(payout_id, patch, expected={"status": payout.get("status")})
    except DdbConflict:
        return get_payout(payout_id)

    if payout.get("monimeTxnId"):
        monime_transactions_repo.update_monime_txn(
            str(payout["monimeTxnId"]), {"status": "COMPLETED" if succeeded else "FAILED"}
        )
    amount_text = f"{payout.get('currency')} {float(payout.get('amount') or 0):,.2f}"
    if succeeded:
        notification_service.notify(
            str(payout["userId"]), "payout_completed", "Withdrawal complete", f"{amount_text} was sent", {}
        )
    else:
        wallet_service.credit(
            str(payout["walletId"]),
            payout.get("amount"),
            type="refund",
            description="Withdrawal reversed",
            reference=f"{payout_id.upper()}-R",
            metadata={"payoutId": payout_id},
            transaction_id=f"txn_{payout_id}_refund",
        )
        notification_service.notify(
            str(payout["userId"]),
            "payout_failed",
            "Withdrawal failed",
            f"{amount_text} was returned to your wallet",
            {},
        )
    log.info("payout_settled", payout_id=payout_id, status=status)
    return updated or get_payout(payout_id)


def settle_payout_from_webhook(data: dict[str, Any], *, succeeded: bool) -> dict[str, Any] | None:
    meta = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    payout_id = str(meta.get("peeapPayoutId") or "")
    if not payout_id:
        log.warning("payout_webhook_missing_reference", monime_id=data.get("id"))
        return None
    reason = None if succeeded else str((data.get("failureDetail") or {}).get("message") or "Payout failed")
    return settle_payout(payout_id, succeeded=succeeded, reason=reason)


def refresh_payout(user_id: str, payout_id: str, *, monime: MonimeClient | None = None) -> dict[str, Any]:
    """
    Bring an unsettled payout up to date with Monime.

    A payout whose submission outcome is unknown is resubmitted under the
    same idempotency key, which returns the original Monime payout if the
    first attempt got through.
    """
    payout = get_payout(payout_id)
    if payout.get("userId") != user_id:
        raise Forbidden("Payout does not belong to you", code="payout_not_owned")
    if payout.get("status") not in ("pending", "processing"):
        return payout
    if not payout.get("monimePayoutId"):
        return _submit_payout(payout, monime=monime)
    try:
        remote = (monime or get_monime_client()).get_payout(str(payout["monimePayoutId"]))
    except MonimeError as e:
        raise UpstreamError(e.message, code="monime_unavailable", status=e.status) from e
    status = str(remote.get("status") or "").lower()
    if status in _MONIME_DONE:
        return settle_payout(payout_id, succeeded=True)
    if status in _MONIME_FAILED:
        return settle_payout(payout_id, succeeded=False, reason=f"Monime payout {status}")
    return payout
