"""
Run the payment watcher: python -m fassets_pay

Loads settings from the environment (and ``.env``), resumes watching
every pending invoice, and runs the observers and sweeps until SIGINT
or SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from fassets_pay.config import Settings
from fassets_pay.errors import ConfigurationError
from fassets_pay.evm import Web3MintClient
from fassets_pay.log import configure_logging
from fassets_pay.mint import MintTrigger
from fassets_pay.observers import PollObserver, SubscribeObserver
from fassets_pay.service import InvoiceService
from fassets_pay.storage import InvoiceStore
from fassets_pay.supervisor import Supervisor
from fassets_pay.tags import ensure_randomness
from fassets_pay.xrpl import JsonRpcClient, WebSocketSubscription

logger = logging.getLogger("fassets_pay")


async def run(settings: Settings, grace: float) -> None:
    """Build the watcher from settings and run it until signalled."""
    store = InvoiceStore(settings.db_path, ttl=settings.invoice_ttl)

    mint_trigger = None
    if settings.mint_enabled:
        mint_client = Web3MintClient(
            settings.evm_rpc_url,
            settings.evm_private_key,
            settings.mint_contract_address,
        )
        logger.info(f"Minting enabled from {mint_client.address}")
        mint_trigger = MintTrigger(
            store,
            mint_client,
            token_decimals=settings.mint_token_decimals,
            lease=settings.mint_lease,
        )
    else:
        logger.info("Minting disabled (PRIVATE_KEY / REWARD_ADDRESS not set)")

    service = InvoiceService(store, settings.deposit_address, mint_trigger=mint_trigger)

    rpc_client = JsonRpcClient(settings.xrpl_rpc_url)
    poll_observer = None
    if settings.poll_enabled:
        poll_observer = PollObserver(
            store,
            rpc_client,
            service.on_observed_transaction,
            settings.deposit_address,
            limit=settings.account_tx_limit,
        )
    subscribe_observer = None
    if settings.subscribe_enabled:
        subscribe_observer = SubscribeObserver(
            WebSocketSubscription(settings.xrpl_ws_url),
            service.on_observed_transaction,
            settings.deposit_address,
        )

    supervisor = Supervisor(
        store,
        poll_observer=poll_observer,
        subscribe_observer=subscribe_observer,
        mint_trigger=mint_trigger,
        poll_interval=settings.poll_interval,
        expiry_interval=settings.expiry_sweep_interval,
        mint_interval=settings.mint_sweep_interval,
    )
    service.attach_scheduler(supervisor)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(
        f"Watching {settings.deposit_address} (mode={settings.observer_mode}, "
        f"db={settings.db_path})"
    )
    await supervisor.start()
    try:
        await stop.wait()
        logger.info("Shutdown requested")
    finally:
        await supervisor.shutdown(grace)
        await rpc_client.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="fassets_pay",
        description="Watch the XRPL deposit address and reconcile invoice payments.",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file (default: nearest .env)",
    )
    parser.add_argument(
        "--grace",
        type=float,
        default=10.0,
        help="Seconds in-flight work may finish on shutdown (default: 10)",
    )
    args = parser.parse_args()

    try:
        settings = Settings.from_env(dotenv_path=args.env_file).validate()
        ensure_randomness()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    configure_logging(settings.log_level)
    try:
        asyncio.run(run(settings, args.grace))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
