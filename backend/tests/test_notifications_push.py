from __future__ import annotations

import json

import httpx
import pytest

from peeap.errors import NotFound, ValidationFailed
from peeap.infrastructure.push.fcm_client import FcmClient, PushDeliveryError
from peeap.modules.notifications import notification_service
from peeap.repositories import notifications_repo, outbox_repo
from peeap.workers import outbox_worker


class FakeFcm:
    def __init__(self, *, invalid: list[str] | None = None, error: Exception | None = None):
        self.invalid = invalid or []
        self.error = error
        self.sent: list[dict] = []

    def send(self, tokens, *, title, body, data=None):
        if self.error:
            raise self.error
        self.sent.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        return {"success": len(tokens) - len(self.invalid), "failure": len(self.invalid), "invalidTokens": self.invalid}


def test_preferences_default_and_merge(fake_table):
    prefs = notification_service.get_preferences("u1")
    assert prefs["payment_received"] is True
    assert prefs["promotional"] is False

    saved = notification_service.save_preferences("u1", {"promotional": True, "low_balance": False})
    assert saved["promotional"] is True
    assert notification_service.get_preferences("u1")["low_balance"] is False

    with pytest.raises(ValidationFailed):
        notification_service.save_preferences("u1", {"nope": True})


def test_notify_stores_and_queues_push(fake_table, no_outbox):
    n = notification_service.notify("u1", "payment_received", "Paid", "You got 5", {"walletId": "w1"})

    assert n["pushQueued"] is True
    assert n["read"] is False
    assert len(no_outbox) == 1
    ev = no_outbox[0]
    assert ev["eventType"] == notification_service.PUSH_EVENT_TYPE
    assert ev["dedupeKey"] == f"push_{n['notificationId']}"
    assert ev["payload"]["data"] == {"walletId": "w1", "type": "payment_received", "url": "/dashboard/transactions"}


def test_opted_out_type_is_stored_without_push(fake_table, no_outbox):
    n = notification_service.notify("u1", "promotional", "Sale", "20% off")
    assert n["pushQueued"] is False
    assert no_outbox == []
    assert len(notification_service.list_notifications("u1")["data"]) == 1

    with pytest.raises(ValidationFailed):
        notification_service.notify("u1", "made_up", "x", "y")


def test_broadcast_dedupes_recipients(fake_table, no_outbox):
    out = notification_service.send_push_to_users(["a", "b", "a", " "], "login_alert", "Hi", "there")
    assert out == {"recipients": 2, "pushQueued": 2}


def test_mark_read_flows(fake_table, no_outbox):
    first = notification_service.notify("u1", "low_balance", "Low", "Top up")
    notification_service.notify("u1", "low_balance", "Low", "Top up again")

    notification_service.mark_read("u1", first["notificationId"])
    unread = notification_service.list_notifications("u1", unread_only=True)["data"]
    assert len(unread) == 1

    assert notification_service.mark_all_read("u1") == 1
    assert notification_service.list_notifications("u1", unread_only=True)["data"] == []

    with pytest.raises(NotFound):
        notification_service.mark_read("u1", "ntf_missing")


def test_deliver_push_prunes_invalid_tokens(fake_table):
    notification_service.register_device("u1", "tok_a", "android")
    notification_service.register_device("u1", " tok_b ", "web")
    fcm = FakeFcm(invalid=["tok_b"])

    res = notification_service.deliver_push({"userId": "u1", "title": "T", "body": "B", "data": {"k": "v"}}, client=fcm)

    assert res == {"ok": True, "sent": 1, "failed": 1}
    assert sorted(fcm.sent[0]["tokens"]) == ["tok_a", "tok_b"]
    assert notifications_repo.list_device_tokens("u1") == ["tok_a"]


def test_deliver_push_without_devices_or_user(fake_table):
    assert notification_service.deliver_push({"userId": "u1"}, client=FakeFcm())["reason"] == "no_devices"
    assert notification_service.deliver_push({}, client=FakeFcm()) == {"ok": False, "error": "missing_user"}
    with pytest.raises(ValidationFailed):
        notification_service.register_device("u1", "  ")


def test_outbox_worker_delivers_and_retries(fake_table, monkeypatch):
    notification_service.register_device("u1", "tok_a")
    notification_service.notify("u1", "payment_received", "Paid", "5")
    outbox_repo.enqueue_event(event_type="mystery", payload={}, dedupe_key="evt_unknown")
    fcm = FakeFcm()
    monkeypatch.setattr(notification_service, "get_fcm_client", lambda: fcm)

    res = outbox_worker.run_once(limit=10)

    assert res == {"ok": True, "scanned": 2, "processed": 1, "failed": 1}
    assert len(fcm.sent) == 1
    unknown = outbox_repo.get_main_table().get_item(key=outbox_repo.outbox_key("evt_unknown"))
    assert unknown["status"] == "pending"
    assert unknown["attempts"] == 1
    assert unknown["lastError"] == "unknown_event_type"

    # Retried events are scheduled in the future, so a second pass finds nothing due.
    assert outbox_worker.run_once()["scanned"] == 0


def test_outbox_worker_retries_push_failures(fake_table, monkeypatch):
    notification_service.register_device("u1", "tok_a")
    n = notification_service.notify("u1", "payment_received", "Paid", "5")
    monkeypatch.setattr(notification_service, "get_fcm_client", lambda: FakeFcm(error=PushDeliveryError("HTTP 503")))

    res = outbox_worker.run_once()

    assert res["failed"] == 1
    ev = outbox_repo.get_main_table().get_item(key=outbox_repo.outbox_key(f"push_{n['notificationId']}"))
    assert ev["lastError"] == "HTTP 503"


def test_fcm_client_batches_and_reports_invalid_tokens():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "key=srv"
        body = json.loads(request.content)
        seen.append(body)
        return httpx.Response(
            200,
            json={"success": 1, "failure": 1, "results": [{"message_id": "1"}, {"error": "NotRegistered"}]},
        )

    client = FcmClient(server_key="srv", endpoint="https://fcm.test/send", transport=httpx.MockTransport(handler))
    out = client.send(["t1", "t2", "t1", ""], title="Hi", body="There", data={"n": 1, "skip": None})

    assert out == {"success": 1, "failure": 1, "invalidTokens": ["t2"]}
    assert seen[0]["registration_ids"] == ["t1", "t2"]
    assert seen[0]["data"] == {"n": "1"}
    assert seen[0]["notification"] == {"title": "Hi", "body": "There"}


def test_fcm_client_errors():
    with pytest.raises(PushDeliveryError):
        FcmClient(server_key="").send(["t"], title="a", body="b")

    client = FcmClient(server_key="srv", transport=httpx.MockTransport(lambda r: httpx.Response(401)))
    with pytest.raises(PushDeliveryError):
        client.send(["t"], title="a", body="b")
