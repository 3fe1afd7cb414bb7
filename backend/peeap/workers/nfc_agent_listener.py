from __future__ import annotations

import asyncio
import signal

from ..infrastructure.nfc.agent_client import CardRead, NfcAgentClient
from ..observability.logging import configure_logging, get_logger

log = get_logger("nfc_agent_listener")


def _on_card(card: CardRead) -> None:
    log.info("nfc_card_read", **card.to_dict())


def _on_status(status: dict) -> None:
    log.info("nfc_reader_status", connected=status.get("connected"), reader_name=status.get("readerName"))


def _on_error(message: str) -> None:
    log.warning("nfc_reader_error", message=message)


async def main(url: str | None = None) -> None:
    client = NfcAgentClient(url)
    client.on_card_detected(_on_card)
    client.on_status_change(_on_status)
    client.on_error(_on_error)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(client.stop()))

    log.info("nfc_agent_listener_starting", url=client.url)
    await client.run()
    log.info("nfc_agent_listener_stopped")


if __name__ == "__main__":
    configure_logging(level="INFO")
    asyncio.run(main())
