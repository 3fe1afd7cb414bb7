from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from ...money import to_money
from ...observability.logging import get_logger
from ...settings import settings

log = get_logger("monime_client")

# Minor units per major unit; anything unlisted falls back to 10.
_CURRENCY_MULTIPLIER = {
    "SLE": 100,
    "SLL": 100,
    "USD": 100,
    "EUR": 100,
    "GBP": 100,
    "NGN": 100,
    "GHS": 100,
}
_FALLBACK_MULTIPLIER = 10


def _multiplier(currency: str) -> int:
    return _CURRENCY_MULTIPLIER.get(str(currency or "").upper(), _FALLBACK_MULTIPLIER)


def to_monime_amount(amount: float, currency: str) -> int:
    return int(round(float(amount) * _multiplier(currency)))


def from_monime_amount(value: float, currency: str) -> float:
    return float(value) / _multiplier(currency)


@dataclass(slots=True)
class MonimeError(Exception):
    message: str
    code: str = "UNKNOWN_ERROR"
    status: int = 500

    def __str__(self) -> str:
        return self.message

    @property
    def is_ambiguous(self) -> bool:
        """The request may have reached Monime and taken effect."""
        if self.code == "CREDENTIALS_MISSING":
            return False
        return self.code in ("NETWORK_ERROR", "INVALID_RESPONSE") or self.status >= 500


class MonimeClient:
    """
    Thin REST client for the Monime payment rail.

    POSTs carry an Idempotency-Key (fresh unless the caller supplies one);
    pass `transport` to stub the network.
    """

    def __init__(
        self,
        *,
        access_token: str | None = None,
        space_id: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.access_token = access_token if access_token is not None else settings.monime_access_token
        self.space_id = space_id if space_id is not None else settings.monime_space_id
        self.base_url = str(base_url or settings.monime_base_url).rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport

    def _headers(self, method: str, idempotency_key: str | None = None) -> dict[str, str]:
        if not self.access_token or not self.space_id:
            raise MonimeError("Monime credentials are not configured", "CREDENTIALS_MISSING", 500)
        h = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Monime-Space-Id": str(self.space_id),
        }
        if method == "POST":
            h["Idempotency-Key"] = idempotency_key or str(uuid.uuid4())
        return h

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        url = self.base_url + path
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as c:
                r = c.request(
                    method, url, headers=self._headers(method, idempotency_key), json=json, params=params
                )
        except httpx.HTTPError as e:
            log.warning("monime_request_failed", method=method, path=path, error=str(e))
            raise MonimeError(f"Monime request failed: {e}", "NETWORK_ERROR", 502) from e

        try:
            data = r.json() if r.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"result": data}

        if r.status_code >= 400:
            err = data.get("error") if isinstance(data.get("error"), dict) else {}
            message = str(err.get("message") or data.get("message") or "Monime API error")
            code = str(err.get("code") or "UNKNOWN_ERROR")
            log.warning("monime_api_error", method=method, path=path, status=r.status_code, code=code)
            raise MonimeError(message, code, r.status_code)
        return data

    # --- checkout sessions ---

    def create_checkout_session(
        self,
        *,
        name: str,
        reference: str,
        line_items: list[dict[str, Any]],
        success_url: str,
        cancel_url: str,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": name,
            "reference": reference,
            "lineItems": line_items,
            "successUrl": success_url,
            "cancelUrl": cancel_url,
        }
        if description:
            body["description"] = description
        if metadata:
            body["metadata"] = metadata
        data = self._request("POST", "/checkout-sessions", json=body)
        result = data.get("result")
        if not isinstance(result, dict) or not result.get("id"):
            raise MonimeError("Invalid response from Monime", "INVALID_RESPONSE", 500)
        log.info("monime_checkout_created", monime_session_id=result.get("id"), reference=reference)
        return result

    def get_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self._request("GET", f"/checkout-sessions/{session_id}").get("result") or {}

    # --- payouts ---

    def create_payout(
        self,
        *,
        amount: float,
        currency: str,
        destination: dict[str, Any],
        financial_account_id: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        account = financial_account_id or settings.monime_financial_account_id
        if not account:
            raise MonimeError("Monime financial account is not configured", "CREDENTIALS_MISSING", 500)
        cur = str(currency or settings.default_currency).upper()
        body: dict[str, Any] = {
            "amount": {"currency": cur, "value": to_monime_amount(amount, cur)},
            "destination": destination,
            "source": {"financialAccountId": account},
        }
        if metadata:
            body["metadata"] = metadata
        data = self._request("POST", "/payouts", json=body, idempotency_key=idempotency_key)
        result = data.get("result")
        if not isinstance(result, dict) or not result.get("id"):
            raise MonimeError("Invalid response from Monime", "INVALID_RESPONSE", 500)
        log.info("monime_payout_created", payout_id=result.get("id"), status=result.get("status"))
        return result

    def get_payout(self, payout_id: str) -> dict[str, Any]:
        return self._request("GET", f"/payouts/{payout_id}").get("result") or {}

    # --- reference data ---

    def list_mobile_money_providers(self, country: str = "SL") -> list[dict[str, Any]]:
        return list(self._request("GET", "/momos", params={"country": country}).get("result") or [])

    def list_banks(self, country: str = "SL") -> list[dict[str, Any]]:
        return list(self._request("GET", "/banks", params={"country": country}).get("result") or [])

    # --- helpers ---

    def create_hosted_checkout(
        self,
        *,
        session_id: str,
        amount: float,
        currency: str,
        description: str | None,
        merchant_name: str,
        merchant_id: str | None,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        cur = str(currency or settings.default_currency).upper()
        result = self.create_checkout_session(
            name=description or f"Payment to {merchant_name}",
            description=f"Checkout session {session_id}",
            reference=session_id,
            success_url=success_url,
            cancel_url=cancel_url,
            line_items=[
                {
                    "type": "custom",
                    "name": description or "Payment",
                    "price": {"currency": cur, "value": to_monime_amount(amount, cur)},
                    "quantity": 1,
                }
            ],
            metadata={
                "peeapSessionId": session_id,
                "merchantId": merchant_id or "",
                "merchantName": merchant_name,
            },
        )
        return {
            "paymentUrl": result.get("redirectUrl"),
            "monimeSessionId": result.get("id"),
            "expiresAt": result.get("expireTime"),
        }

    def create_deposit_checkout(
        self,
        *,
        reference: str,
        wallet_id: str,
        user_id: str,
        amount: float,
        currency: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        cur = str(currency or settings.default_currency).upper()
        result = self.create_checkout_session(
            name="Deposit to Peeap Wallet",
            description=f"Wallet deposit {reference}",
            reference=reference,
            success_url=success_url,
            cancel_url=cancel_url,
            line_items=[
                {
                    "type": "custom",
                    "name": "Wallet Deposit",
                    "price": {"currency": cur, "value": to_monime_amount(amount, cur)},
                    "quantity": 1,
                }
            ],
            metadata={"type": "deposit", "walletId": wallet_id, "userId": user_id},
        )
        return {
            "paymentUrl": result.get("redirectUrl"),
            "monimeSessionId": result.get("id"),
            "expiresAt": result.get("expireTime"),
        }

    def send_to_mobile_money(
        self,
        *,
        amount: float,
        currency: str,
        phone_number: str,
        provider_id: str,
        user_id: str,
        wallet_id: str,
        description: str | None = None,
        reference: str | None = None,
        financial_account_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Pay out to a mobile-money number; `totalFee` is in major units.

        `reference` doubles as the Idempotency-Key, so resubmitting the same
        payout after an ambiguous failure cannot pay twice.
        """
        result = self.create_payout(
            amount=amount,
            currency=currency,
            destination={"type": "momo", "providerId": provider_id, "phoneNumber": phone_number},
            financial_account_id=financial_account_id,
            metadata={
                "type": "mobile_money_send",
                "userId": user_id,
                "walletId": wallet_id,
                "description": description or "Send to Mobile Money",
                "peeapPayoutId": reference or "",
            },
            idempotency_key=reference,
        )
        fees = list(result.get("fees") or [])
        total_fee = sum(
            from_monime_amount((f.get("amount") or {}).get("value") or 0, (f.get("amount") or {}).get("currency") or currency)
            for f in fees
        )
        return {
            "payoutId": result.get("id"),
            "status": result.get("status"),
            "fees": fees,
            "totalFee": to_money(total_fee),
        }


def get_monime_client() -> MonimeClient:
    return MonimeClient()
