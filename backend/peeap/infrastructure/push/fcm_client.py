from __future__ import annotations

from typing import Any

import httpx

from ...observability.logging import get_logger
from ...settings import settings

log = get_logger("fcm")

# The legacy API accepts at most this many tokens per multicast request.
MAX_TOKENS_PER_REQUEST = 1000


class PushDeliveryError(Exception):
    """FCM rejected the request as a whole (auth, network, 5xx)."""


def is_push_configured() -> bool:
    return bool(str(settings.fcm_server_key or "").strip())


class FcmClient:
    def __init__(
        self,
        *,
        server_key: str | None = None,
        endpoint: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key if server_key is not None else settings.fcm_server_key
        self.endpoint = endpoint or settings.fcm_endpoint
        self.timeout_s = timeout_s
        self._transport = transport

    def send(
        self,
        tokens: list[str],
        *,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Send one notification to every device token.

        Returns counts plus the tokens FCM reported as no longer registered,
        so callers can prune them.
        """
        if not self.server_key:
            raise PushDeliveryError("FCM server key is not configured")
        uniq = list(dict.fromkeys(t for t in tokens if t))
        out: dict[str, Any] = {"success": 0, "failure": 0, "invalidTokens": []}
        if not uniq:
            return out

        str_data = {k: str(v) for k, v in (data or {}).items() if v is not None}
        with httpx.Client(timeout=self.timeout_s, transport=self._transport) as c:
            for i in range(0, len(uniq), MAX_TOKENS_PER_REQUEST):
                batch = uniq[i : i + MAX_TOKENS_PER_REQUEST]
                payload = {
                    "registration_ids": batch,
                    "notification": {"title": title, "body": body},
                    "data": str_data,
                    "priority": "high",
                }
                try:
                    r = c.post(
                        self.endpoint,
                        json=payload,
                        headers={"Authorization": f"key={self.server_key}", "Content-Type": "application/json"},
                    )
                except httpx.HTTPError as e:
                    raise PushDeliveryError(f"FCM request failed: {e}") from e
                if r.status_code >= 400:
                    raise PushDeliveryError(f"FCM returned HTTP {r.status_code}")
                res = r.json() if r.content else {}
                out["success"] += int(res.get("success") or 0)
                out["failure"] += int(res.get("failure") or 0)
                for token, result in zip(batch, res.get("results") or []):
                    if (result or {}).get("error") in ("NotRegistered", "InvalidRegistration"):
                        out["invalidTokens"].append(token)

        log.info("fcm_sent", tokens=len(uniq), success=out["success"], failure=out["failure"])
        return out


def get_fcm_client() -> FcmClient:
    return FcmClient()
