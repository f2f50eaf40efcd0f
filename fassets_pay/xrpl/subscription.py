"""
XRPL websocket subscription — the push side of the ledger capability.

One long-lived websocket per deposit address. After connecting it sends

    {"id": 1, "command": "subscribe", "accounts": ["r..."]}

and then yields every ``"type": "transaction"`` message rippled pushes.
Subscribe responses and ledger/heartbeat messages are consumed here.

A dropped or closed connection surfaces as TransientLedgerError; the
SubscribeObserver reconnects and re-subscribes. rippled does not replay
missed transactions on resubscribe, which is why the poll observer
exists alongside this one.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from fassets_pay.errors import TransientLedgerError

logger = logging.getLogger(__name__)


class WebSocketSubscription:
    """aiohttp-based implementation of the LedgerSubscription protocol.

    Args:
        url: rippled websocket URL (e.g. "wss://s.altnet.rippletest.net:51233").
        heartbeat: Seconds between websocket pings; a missed pong drops
            the connection.
        connect_timeout: Seconds allowed for the websocket handshake.
    """

    def __init__(
        self,
        url: str,
        *,
        heartbeat: float = 30.0,
        connect_timeout: float = 15.0,
    ) -> None:
        self._url = url
        self._heartbeat = heartbeat
        self._connect_timeout = connect_timeout

    @property
    def url(self) -> str:
        return self._url

    async def stream(self, account: str) -> AsyncIterator[dict[str, Any]]:
        """Connect, subscribe to ``account``, and yield transaction messages.

        Raises:
            TransientLedgerError: On connect failure, subscribe rejection,
                or when the connection closes.
        """
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.ws_connect(self._url, heartbeat=self._heartbeat) as ws:
                    await ws.send_json({
                        "id": 1,
                        "command": "subscribe",
                        "accounts": [account],
                    })
                    logger.info(f"Subscribed to {account} via {self._url}")

                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            data = _decode(msg.data)
                            if data is None:
                                continue
                            if data.get("type") == "response":
                                _check_subscribe_response(data)
                                continue
                            if data.get("type") == "transaction":
                                yield data
                        elif msg.type in (
                            aiohttp.WSMsgType.CLOSE,
                            aiohttp.WSMsgType.CLOSED,
                            aiohttp.WSMsgType.ERROR,
                        ):
                            break
        except aiohttp.ClientError as exc:
            raise TransientLedgerError(f"websocket connection failed: {exc}") from exc

        raise TransientLedgerError(f"websocket closed: {self._url}")


def _decode(raw: str) -> dict[str, Any] | None:
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug(f"Ignoring non-JSON websocket message: {raw[:200]!r}")
        return None
    if not isinstance(data, dict):
        return None
    return data


def _check_subscribe_response(data: dict[str, Any]) -> None:
    if data.get("status") == "error":
        detail = data.get("error_message") or data.get("error", "unknown")
        raise TransientLedgerError(f"subscribe rejected: {detail}")
