from __future__ import annotations

import asyncio
import inspect
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ...observability.logging import get_logger
from ...settings import settings

log = get_logger("nfc_agent")

_UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE)


class AgentConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


ConnectFn = Callable[[str], Awaitable[AgentConnection]]


@dataclass(frozen=True, slots=True)
class CardRead:
    uid: str
    data: str
    type: str
    detected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, str]:
        return {"uid": self.uid, "data": self.data, "type": self.type, "detectedAt": self.detected_at}


def classify_card(uid: str, data: str | None) -> CardRead:
    """A card whose payload is a UUID carries a wallet id; anything else is unknown."""
    payload = str(data or "").strip() or uid
    kind = "wallet" if _UUID_RE.match(payload) else "unknown"
    return CardRead(uid=uid, data=payload, type=kind)


def backoff_delay(attempt: int, *, base_s: float, max_s: float) -> float:
    return min(max_s, base_s * (2 ** max(0, attempt)))


async def _default_connect(url: str) -> AgentConnection:
    return await websockets.connect(url, ping_interval=None)


class NfcAgentClient:
    """
    Client for the local PC/SC reader agent.

    `run()` keeps a connection open until `stop()`: it pings every
    `ping_interval_s`, drops a connection that has been silent for twice
    that, and reconnects with exponential backoff.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        ping_interval_s: float | None = None,
        reconnect_base_s: float = 1.0,
        reconnect_max_s: float | None = None,
        connect: ConnectFn | None = None,
    ):
        self.url = url or settings.nfc_agent_url
        self.ping_interval_s = float(ping_interval_s or settings.nfc_agent_ping_interval_s)
        self.reconnect_base_s = float(reconnect_base_s)
        self.reconnect_max_s = float(reconnect_max_s or settings.nfc_agent_reconnect_max_s)
        self._connect = connect or _default_connect
        self._ws: AgentConnection | None = None
        self._stopping = asyncio.Event()
        self._card_cbs: list[Callable[[CardRead], Any]] = []
        self._status_cbs: list[Callable[[dict[str, Any]], Any]] = []
        self._error_cbs: list[Callable[[str], Any]] = []
        self.connected = False
        self.reader_name: str | None = None
        self.attempt = 0

    # --- subscriptions ---

    @staticmethod
    def _subscribe(registry: list[Any], cb: Any) -> Callable[[], None]:
        registry.append(cb)

        def unsubscribe() -> None:
            if cb in registry:
                registry.remove(cb)

        return unsubscribe

    def on_card_detected(self, cb: Callable[[CardRead], Any]) -> Callable[[], None]:
        return self._subscribe(self._card_cbs, cb)

    def on_status_change(self, cb: Callable[[dict[str, Any]], Any]) -> Callable[[], None]:
        return self._subscribe(self._status_cbs, cb)

    def on_error(self, cb: Callable[[str], Any]) -> Callable[[], None]:
        return self._subscribe(self._error_cbs, cb)

    async def _emit(self, registry: list[Any], arg: Any) -> None:
        for cb in list(registry):
            try:
                res = cb(arg)
                if inspect.isawaitable(res):
                    await res
            except Exception:
                log.exception("nfc_callback_failed", callback=getattr(cb, "__name__", repr(cb)))

    # --- wire ---

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws is not None:
            await self._ws.send(json.dumps(message))

    async def request_status(self) -> None:
        await self._send({"type": "get_status"})

    async def _set_status(self, connected: bool, reader_name: str | None) -> None:
        if connected == self.connected and reader_name == self.reader_name:
            return
        self.connected = connected
        self.reader_name = reader_name
        await self._emit(self._status_cbs, {"connected": connected, "readerName": reader_name})

    async def _handle(self, raw: str | bytes) -> None:
        try:
            msg = json.loads(raw)
        except ValueError:
            log.warning("nfc_agent_bad_message", size=len(raw))
            return
        if not isinstance(msg, dict):
            return
        kind = msg.get("type")
        if kind == "card_detected":
            uid = str(msg.get("uid") or "").strip()
            if not uid:
                return
            card = classify_card(uid, msg.get("data"))
            log.info("nfc_card_detected", uid=card.uid, card_type=card.type)
            await self._emit(self._card_cbs, card)
        elif kind == "status":
            await self._set_status(bool(msg.get("connected")), msg.get("readerName"))
        elif kind == "error":
            message = str(msg.get("message") or "Unknown agent error")
            log.warning("nfc_agent_error", message=message)
            await self._emit(self._error_cbs, message)
        elif kind != "pong":
            log.debug("nfc_agent_unknown_message", message_type=kind)

    # --- loops ---

    async def _session(self, ws: AgentConnection) -> None:
        loop = asyncio.get_running_loop()
        interval = self.ping_interval_s
        dead_after = interval * 2
        last_msg = last_ping = loop.time()
        await self.request_status()
        while not self._stopping.is_set():
            now = loop.time()
            if now - last_msg >= dead_after:
                log.warning("nfc_agent_heartbeat_timeout", silent_s=round(now - last_msg, 1))
                break
            if now - last_ping >= interval:
                await self._send({"type": "ping"})
                last_ping = now
            wait = min(interval - (now - last_ping), dead_after - (now - last_msg))
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=max(0.01, wait))
            except asyncio.TimeoutError:
                continue
            last_msg = loop.time()
            await self._handle(raw)

    async def run(self) -> None:
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                ws = await self._connect(self.url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                log.info("nfc_agent_connect_failed", url=self.url, attempt=self.attempt, error=str(e))
            else:
                self._ws = ws
                self.attempt = 0
                log.info("nfc_agent_connected", url=self.url)
                try:
                    await self._session(ws)
                except ConnectionClosed:
                    log.info("nfc_agent_connection_closed")
                finally:
                    self._ws = None
                    await ws.close()
                    await self._set_status(False, None)
            if self._stopping.is_set():
                break
            delay = backoff_delay(self.attempt, base_s=self.reconnect_base_s, max_s=self.reconnect_max_s)
            self.attempt += 1
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def stop(self) -> None:
        self._stopping.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
