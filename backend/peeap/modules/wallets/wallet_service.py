from __future__ import annotations

from typing import Any, Callable

from ...db.dynamodb.errors import DdbConflict
from ...db.dynamodb.table import get_main_table
from ...errors import InvalidState, NotFound, ValidationFailed
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import transactions_repo, wallets_repo
from ...repositories.common import new_id, tx_apply_update
from ...repositories.wallets_repo import wallet_key
from ...settings import settings

log = get_logger("wallet_service")

_MAX_OPTIMISTIC_RETRIES = 5


def _amount(value: Any) -> float:
    try:
        amt = to_money(float(value))
    except (TypeError, ValueError) as e:
        raise ValidationFailed("amount must be a number") from e
    if amt <= 0:
        raise ValidationFailed("amount must be greater than 0")
    return amt


def get_wallet(wallet_id: str) -> dict[str, Any]:
    w = wallets_repo.get_wallet(wallet_id)
    if not w:
        raise NotFound("Wallet not found", code="wallet_not_found")
    return w


def get_or_create_wallet(
    user_id: str,
    *,
    currency: str | None = None,
    wallet_type: str = "personal",
    name: str | None = None,
    external_id: str | None = None,
) -> dict[str, Any]:
    wallet, created = wallets_repo.create_wallet(
        owner_id=user_id,
        wallet_type=wallet_type,
        currency=(currency or settings.default_currency),
        name=name,
        external_id=external_id,
    )
    if created:
        log.info("wallet_created", wallet_id=wallet.get("walletId"), wallet_type=wallet_type)
    return wallet


def list_user_wallets(user_id: str) -> list[dict[str, Any]]:
    return wallets_repo.list_user_wallets(user_id)


def set_wallet_status(wallet_id: str, status: str) -> dict[str, Any]:
    if status not in wallets_repo.WALLET_STATUSES:
        raise ValidationFailed(f"invalid wallet status: {status}")
    get_wallet(wallet_id)
    updated = wallets_repo.set_wallet_status(wallet_id, status)
    log.info("wallet_status_changed", wallet_id=wallet_id, status=status)
    return updated or get_wallet(wallet_id)


def _ensure_active(wallet: dict[str, Any]) -> None:
    if wallet.get("status") != "ACTIVE":
        raise InvalidState("Wallet is frozen", code="wallet_frozen")


def _raw_balance(wallet_id: str) -> tuple[dict[str, Any], Any]:
    raw = get_main_table().get_item(key=wallet_key(wallet_id))
    if not raw:
        raise NotFound("Wallet not found", code="wallet_not_found")
    return raw, raw.get("balance") or 0


def _existing_transaction(transaction_id: str | None) -> dict[str, Any] | None:
    if not transaction_id:
        return None
    return transactions_repo.get_transaction(transaction_id)


def _post(
    wallet_id: str,
    amount: Any,
    *,
    sign: int,
    type: str,
    description: str | None,
    reference: str | None,
    metadata: dict[str, Any] | None,
    transaction_id: str | None,
) -> dict[str, Any]:
    amt = _amount(amount)
    t = get_main_table()
    for _ in range(_MAX_OPTIMISTIC_RETRIES):
        raw, balance = _raw_balance(wallet_id)
        _ensure_active(raw)
        new_balance = to_money(float(balance) + sign * amt)
        if new_balance < 0:
            raise InvalidState("Insufficient balance", code="insufficient_balance")
        txn = transactions_repo.build_transaction_item(
            user_id=str(raw.get("userId")),
            wallet_id=wallet_id,
            type=type,
            amount=amt,
            currency=str(raw.get("currency") or settings.default_currency),
            reference=reference,
            description=description,
            metadata=metadata,
            transaction_id=transaction_id,
        )
        try:
            t.transact_write(
                puts=[t.tx_put(item=txn, condition_expression="attribute_not_exists(pk)")],
                updates=[
                    tx_apply_update(
                        wallet_key(wallet_id),
                        {"balance": new_balance},
                        expected={"balance": balance, "status": "ACTIVE"},
                    )
                ],
            )
        except DdbConflict:
            existing = _existing_transaction(transaction_id)
            if existing:
                return existing
            continue
        return transactions_repo.normalize_transaction(txn) or {}
    raise InvalidState("Wallet is busy, retry the operation", code="wallet_contention")


def credit(
    wallet_id: str,
    amount: Any,
    *,
    type: str = "credit",
    description: str | None = None,
    reference: str | None = None,
    metadata: dict[str, Any] | None = None,
    transaction_id: str | None = None,
) -> dict[str, Any]:
    """Add funds and record one completed transaction. Idempotent when `transaction_id` is fixed."""
    return _post(
        wallet_id,
        amount,
        sign=1,
        type=type,
        description=description,
        reference=reference,
        metadata=metadata,
        transaction_id=transaction_id,
    )


def debit(
    wallet_id: str,
    amount: Any,
    *,
    type: str = "payment",
    description: str | None = None,
    reference: str | None = None,
    metadata: dict[str, Any] | None = None,
    transaction_id: str | None = None,
) -> dict[str, Any]:
    return _post(
        wallet_id,
        amount,
        sign=-1,
        type=type,
        description=description,
        reference=reference,
        metadata=metadata,
        transaction_id=transaction_id,
    )


def transfer(
    from_wallet_id: str,
    to_wallet_id: str,
    amount: Any,
    *,
    description: str | None = None,
    reference: str | None = None,
    metadata: dict[str, Any] | None = None,
    extra_updates: Callable[[], list[dict[str, Any]]] | None = None,
) -> dict[str, Any]:
    """
    Move funds between two wallets of the same currency.

    Both balance changes and both ledger rows (`send` / `receive`) commit in
    one DynamoDB transaction guarded by the balances that were read.

    `extra_updates` is called on every attempt and its entries join the same
    transaction, tying the caller's own record to the money movement. It may
    raise to abort the transfer.
    """
    amt = _amount(amount)
    if from_wallet_id == to_wallet_id:
        raise ValidationFailed("Cannot transfer to the same wallet")

    ref = reference or new_id("trf").upper()
    t = get_main_table()
    for _ in range(_MAX_OPTIMISTIC_RETRIES):
        src, src_balance = _raw_balance(from_wallet_id)
        dst, dst_balance = _raw_balance(to_wallet_id)
        _ensure_active(src)
        _ensure_active(dst)
        if src.get("currency") != dst.get("currency"):
            raise ValidationFailed("Wallet currencies do not match")
        if float(src_balance) < amt:
            raise InvalidState("Insufficient balance", code="insufficient_balance")

        meta = dict(metadata or {})
        out_txn = transactions_repo.build_transaction_item(
            user_id=str(src.get("userId")),
            wallet_id=from_wallet_id,
            type="send",
            amount=amt,
            currency=str(src.get("currency")),
            reference=ref,
            description=description,
            metadata=meta,
            counterparty_wallet_id=to_wallet_id,
        )
        in_txn = transactions_repo.build_transaction_item(
            user_id=str(dst.get("userId")),
            wallet_id=to_wallet_id,
            type="receive",
            amount=amt,
            currency=str(dst.get("currency")),
            reference=ref,
            description=description,
            metadata=meta,
            counterparty_wallet_id=from_wallet_id,
        )
        try:
            t.transact_write(
                puts=[t.tx_put(item=out_txn), t.tx_put(item=in_txn)],
                updates=[
                    tx_apply_update(
                        wallet_key(from_wallet_id),
                        {"balance": to_money(float(src_balance) - amt)},
                        expected={"balance": src_balance, "status": "ACTIVE"},
                        prefix="s",
                    ),
                    tx_apply_update(
                        wallet_key(to_wallet_id),
                        {"balance": to_money(float(dst_balance) + amt)},
                        expected={"balance": dst_balance, "status": "ACTIVE"},
                        prefix="d",
                    ),
                    *(extra_updates() if extra_updates else []),
                ],
            )
        except DdbConflict:
            continue
        log.info("wallet_transfer", reference=ref, amount=amt, currency=src.get("currency"))
        return {
            "reference": ref,
            "debit": transactions_repo.normalize_transaction(out_txn),
            "credit": transactions_repo.normalize_transaction(in_txn),
        }
    raise InvalidState("Wallet is busy, retry the operation", code="wallet_contention")
