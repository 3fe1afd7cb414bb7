from __future__ import annotations

import secrets
import string
import time
from typing import Any

from ...errors import Forbidden, InvalidState, NotFound, ValidationFailed
from ...observability.logging import get_logger
from ...repositories import school_connections_repo
from ...repositories.common import now_iso
from ...settings import settings
from ..wallets import wallet_service

log = get_logger("school_service")

_REF_ALPHABET = string.ascii_uppercase + string.digits


def _fee_reference() -> str:
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"FEE-{int(time.time() * 1000)}-{suffix}"


def _wallet_owner(school_id: str) -> str:
    return f"school_{school_id}"


def connect_school(
    school_id: str, *, school_name: str, peeap_school_id: str, connected_by: str | None = None
) -> dict[str, Any]:
    name = str(school_name or "").strip()
    if not str(school_id or "").strip() or not name or not str(peeap_school_id or "").strip():
        raise ValidationFailed("school_id, school_name and peeap_school_id are required")
    conn, created = school_connections_repo.create_connection(
        school_id=school_id, school_name=name, peeap_school_id=peeap_school_id, connected_by=connected_by
    )
    if created:
        log.info("school_connected", school_id=school_id, peeap_school_id=peeap_school_id)
    elif conn.get("status") != "connected":
        conn = school_connections_repo.update_connection(
            school_id, {"status": "connected", "connectedBy": connected_by, "disconnectedAt": None}
        ) or conn
        log.info("school_reconnected", school_id=school_id)
    return conn


def get_connection(school_id: str) -> dict[str, Any]:
    c = school_connections_repo.get_connection(school_id)
    if not c:
        raise NotFound("School connection not found", code="school_not_found")
    return c


def list_connections(*, status: str | None = None) -> list[dict[str, Any]]:
    rows = school_connections_repo.list_connections()
    if status and status != "all":
        rows = [c for c in rows if c.get("status") == status]
    return rows


def disconnect(school_id: str) -> dict[str, Any]:
    conn = get_connection(school_id)
    if conn.get("status") == "disconnected":
        return conn
    updated = school_connections_repo.update_connection(
        school_id, {"status": "disconnected", "disconnectedAt": now_iso()}
    )
    log.info("school_disconnected", school_id=school_id)
    return updated or get_connection(school_id)


def ensure_school_wallet(school_id: str) -> dict[str, Any]:
    """The school's collection wallet, created and linked on first use."""
    conn = get_connection(school_id)
    if conn.get("walletId"):
        return wallet_service.get_wallet(str(conn["walletId"]))
    wallet = wallet_service.get_or_create_wallet(
        _wallet_owner(school_id),
        currency=settings.default_currency,
        wallet_type="school",
        name=f"{conn.get('schoolName')} Wallet",
        external_id=f"SCH-{conn.get('peeapSchoolId')}",
    )
    # The wallet id is derived from the school, so concurrent links write the same value.
    school_connections_repo.update_connection(school_id, {"walletId": wallet["walletId"]})
    log.info("school_wallet_linked", school_id=school_id, wallet_id=wallet["walletId"])
    return wallet


def pay_school_fee(
    payer_wallet_id: str,
    school_id: str,
    amount: Any,
    *,
    fee_id: str,
    student_id: str,
    payer_user_id: str | None = None,
) -> dict[str, Any]:
    conn = get_connection(school_id)
    if conn.get("status") != "connected":
        raise InvalidState("School is not connected", code="school_disconnected")
    if payer_user_id is not None:
        payer = wallet_service.get_wallet(payer_wallet_id)
        if payer.get("userId") != payer_user_id:
            raise Forbidden("Wallet does not belong to you", code="wallet_not_owned")
    school_wallet = ensure_school_wallet(school_id)
    result = wallet_service.transfer(
        payer_wallet_id,
        school_wallet["walletId"],
        amount,
        description=f"School fee payment to {conn.get('schoolName')}",
        reference=_fee_reference(),
        metadata={
            "type": "school_fee_payment",
            "schoolId": school_id,
            "feeId": fee_id,
            "studentId": student_id,
        },
    )
    log.info("school_fee_paid", school_id=school_id, fee_id=fee_id, reference=result["reference"])
    return result
