from __future__ import annotations

import json

import httpx
import pytest

from peeap.infrastructure.monime.client import (
    MonimeClient,
    MonimeError,
    from_monime_amount,
    to_monime_amount,
)
from peeap.infrastructure.monime.signature import sign_header, verify_signature


def _client(handler) -> MonimeClient:
    return MonimeClient(
        access_token="tok",
        space_id="spc_1",
        base_url="https://monime.test/v1/",
        transport=httpx.MockTransport(handler),
    )


def test_amount_conversion_uses_minor_units():
    assert to_monime_amount(12.5, "SLE") == 1250
    assert to_monime_amount(3, "xof") == 30
    assert from_monime_amount(1250, "usd") == 12.5


def test_hosted_checkout_request_shape():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"result": {"id": "mcs_1", "redirectUrl": "https://pay/x", "expireTime": "t"}})

    out = _client(handler).create_hosted_checkout(
        session_id="cs_abc",
        amount=25,
        currency="sle",
        description=None,
        merchant_name="Acme",
        merchant_id="m1",
        success_url="https://ok",
        cancel_url="https://no",
    )

    assert out == {"paymentUrl": "https://pay/x", "monimeSessionId": "mcs_1", "expiresAt": "t"}
    req = seen[0]
    assert str(req.url) == "https://monime.test/v1/checkout-sessions"
    assert req.headers["Authorization"] == "Bearer tok"
    assert req.headers["Monime-Space-Id"] == "spc_1"
    assert req.headers["Idempotency-Key"]
    body = json.loads(req.content)
    assert body["reference"] == "cs_abc"
    assert body["name"] == "Payment to Acme"
    assert body["lineItems"][0]["price"] == {"currency": "SLE", "value": 2500}
    assert body["metadata"]["peeapSessionId"] == "cs_abc"


def test_api_error_is_raised_with_status_and_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": {"code": "invalid_amount", "message": "Amount too small"}})

    with pytest.raises(MonimeError) as exc:
        _client(handler).get_checkout_session("mcs_1")
    assert exc.value.status == 422
    assert exc.value.code == "invalid_amount"
    assert str(exc.value) == "Amount too small"


def test_network_failure_maps_to_502():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(MonimeError) as exc:
        _client(handler).list_banks()
    assert exc.value.status == 502
    assert exc.value.code == "NETWORK_ERROR"


def test_missing_credentials():
    c = MonimeClient(access_token="", space_id="", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(MonimeError) as exc:
        c.list_mobile_money_providers()
    assert exc.value.code == "CREDENTIALS_MISSING"


def test_send_to_mobile_money_sums_fees():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["destination"] == {"type": "momo", "providerId": "m17", "phoneNumber": "+23276000000"}
        assert body["source"] == {"financialAccountId": "fa_1"}
        assert body["metadata"]["peeapPayoutId"] == "po_1"
        assert request.headers["Idempotency-Key"] == "po_1"
        return httpx.Response(
            200,
            json={
                "result": {
                    "id": "pyt_1",
                    "status": "pending",
                    "fees": [
                        {"amount": {"currency": "SLE", "value": 150}},
                        {"amount": {"currency": "SLE", "value": 25}},
                    ],
                }
            },
        )

    out = _client(handler).send_to_mobile_money(
        amount=10,
        currency="SLE",
        phone_number="+23276000000",
        provider_id="m17",
        user_id="u1",
        wallet_id="w1",
        reference="po_1",
        financial_account_id="fa_1",
    )
    assert out["payoutId"] == "pyt_1"
    assert out["totalFee"] == 1.75


@pytest.mark.parametrize(
    "error,ambiguous",
    [
        (MonimeError("timeout", "NETWORK_ERROR", 502), True),
        (MonimeError("bad body", "INVALID_RESPONSE", 500), True),
        (MonimeError("gateway", "UNKNOWN_ERROR", 503), True),
        (MonimeError("no keys", "CREDENTIALS_MISSING", 500), False),
        (MonimeError("bad number", "INVALID_DESTINATION", 400), False),
    ],
)
def test_error_ambiguity(error, ambiguous):
    assert error.is_ambiguous is ambiguous


def test_signature_round_trip_and_tolerance():
    body = b'{"event":"x"}'
    header = sign_header(body, "whsec_1", timestamp=1_700_000_000)

    assert verify_signature(body, header, "whsec_1", now=1_700_000_100)
    assert not verify_signature(body + b" ", header, "whsec_1", now=1_700_000_100)
    assert not verify_signature(body, header, "other", now=1_700_000_100)
    assert not verify_signature(body, header, "whsec_1", now=1_700_000_301)
    assert not verify_signature(body, "t=abc,v1=00", "whsec_1")
    assert not verify_signature(body, None, "whsec_1")
    assert not verify_signature(body, header, None)
