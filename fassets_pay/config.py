"""
Watcher configuration from the environment.

Settings.from_env() loads a ``.env`` file (python-dotenv) into the
process environment, then reads:

    XRPL_RPC_URL            JSON-RPC endpoint for account_tx
    XRPL_WSS                websocket endpoint for subscribe
    XRPL_DEPOSIT_ADDRESS    watch address (required)
    INVOICE_DB_PATH         SQLite file
    INVOICE_TTL_SECONDS     invoice lifetime
    POLL_INTERVAL_SECONDS   per-invoice poll period
    ACCOUNT_TX_LIMIT        account_tx page size
    EXPIRY_SWEEP_SECONDS    expiry sweep period
    MINT_SWEEP_SECONDS      mint retry sweep period
    MINT_LEASE_SECONDS      age after which a mint claim is abandoned
    OBSERVER_MODE           poll | subscribe | both
    FLARE_RPC               second-ledger RPC endpoint
    PRIVATE_KEY             minter key (minting disabled if unset)
    REWARD_ADDRESS          token contract (minting disabled if unset)
    MINT_TOKEN_DECIMALS     decimals of the minted token
    LOG_LEVEL               logging level name
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from dotenv import dotenv_values, load_dotenv

from fassets_pay.errors import ConfigurationError

OBSERVER_MODES = frozenset({"poll", "subscribe", "both"})

# Classic XRPL address: base58 (ripple alphabet), leading 'r'.
_CLASSIC_ADDRESS = re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$")


def is_classic_address(value: str | None) -> bool:
    return bool(value) and _CLASSIC_ADDRESS.match(value) is not None


@dataclass(frozen=True)
class Settings:
    """Resolved watcher settings. Build with from_env(), check with validate()."""

    deposit_address: str
    xrpl_rpc_url: str = "https://s.altnet.rippletest.net:51234"
    xrpl_ws_url: str = "wss://s.altnet.rippletest.net:51233"
    db_path: str = "invoices.db"
    invoice_ttl_seconds: int = 1800
    poll_interval: float = 5.0
    account_tx_limit: int = 20
    expiry_sweep_interval: float = 30.0
    mint_sweep_interval: float = 60.0
    mint_lease_seconds: int = 600
    observer_mode: str = "both"
    evm_rpc_url: str = "https://coston2-api.flare.network/ext/C/rpc"
    evm_private_key: str = ""
    mint_contract_address: str = ""
    mint_token_decimals: int = 18
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        dotenv_path: str | Path | None = None,
    ) -> Settings:
        """Read settings from the environment.

        Args:
            environ: Mapping to read instead of os.environ (tests).
                When given, the process environment is not touched.
            dotenv_path: Explicit ``.env`` file; default is the nearest
                ``.env`` found by python-dotenv.

        Raises:
            ConfigurationError: If a numeric variable does not parse.
        """
        if environ is None:
            load_dotenv(dotenv_path=dotenv_path)
            env: Mapping[str, str] = os.environ
        elif dotenv_path is not None:
            file_values = {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}
            env = {**file_values, **environ}
        else:
            env = environ

        def text(name: str, default: str) -> str:
            return env.get(name, default).strip()

        return cls(
            deposit_address=text("XRPL_DEPOSIT_ADDRESS", ""),
            xrpl_rpc_url=text("XRPL_RPC_URL", cls.xrpl_rpc_url),
            xrpl_ws_url=text("XRPL_WSS", cls.xrpl_ws_url),
            db_path=text("INVOICE_DB_PATH", cls.db_path),
            invoice_ttl_seconds=_parse(env, "INVOICE_TTL_SECONDS", int, cls.invoice_ttl_seconds),
            poll_interval=_parse(env, "POLL_INTERVAL_SECONDS", float, cls.poll_interval),
            account_tx_limit=_parse(env, "ACCOUNT_TX_LIMIT", int, cls.account_tx_limit),
            expiry_sweep_interval=_parse(
                env, "EXPIRY_SWEEP_SECONDS", float, cls.expiry_sweep_interval
            ),
            mint_sweep_interval=_parse(env, "MINT_SWEEP_SECONDS", float, cls.mint_sweep_interval),
            mint_lease_seconds=_parse(env, "MINT_LEASE_SECONDS", int, cls.mint_lease_seconds),
            observer_mode=text("OBSERVER_MODE", cls.observer_mode).lower(),
            evm_rpc_url=text("FLARE_RPC", cls.evm_rpc_url),
            evm_private_key=text("PRIVATE_KEY", ""),
            mint_contract_address=text("REWARD_ADDRESS", ""),
            mint_token_decimals=_parse(env, "MINT_TOKEN_DECIMALS", int, cls.mint_token_decimals),
            log_level=text("LOG_LEVEL", cls.log_level).upper(),
        )

    @property
    def invoice_ttl(self) -> timedelta:
        return timedelta(seconds=self.invoice_ttl_seconds)

    @property
    def mint_lease(self) -> timedelta:
        return timedelta(seconds=self.mint_lease_seconds)

    @property
    def mint_enabled(self) -> bool:
        return bool(self.evm_private_key and self.mint_contract_address)

    @property
    def poll_enabled(self) -> bool:
        return self.observer_mode in ("poll", "both")

    @property
    def subscribe_enabled(self) -> bool:
        return self.observer_mode in ("subscribe", "both")

    def validate(self) -> Settings:
        """Check the settings are usable; returns self.

        Raises:
            ConfigurationError: On a missing or malformed deposit address,
                an unknown observer mode, a non-positive period, or half
                of the minting configuration.
        """
        if not self.deposit_address:
            raise ConfigurationError("XRPL_DEPOSIT_ADDRESS is required")
        if not is_classic_address(self.deposit_address):
            raise ConfigurationError(
                f"XRPL_DEPOSIT_ADDRESS is not a classic address: {self.deposit_address!r}"
            )
        if self.observer_mode not in OBSERVER_MODES:
            raise ConfigurationError(
                f"OBSERVER_MODE must be one of {sorted(OBSERVER_MODES)}, "
                f"got: {self.observer_mode!r}"
            )
        for name in (
            "invoice_ttl_seconds",
            "poll_interval",
            "account_tx_limit",
            "expiry_sweep_interval",
            "mint_sweep_interval",
            "mint_lease_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got: {getattr(self, name)}")
        if bool(self.evm_private_key) != bool(self.mint_contract_address):
            raise ConfigurationError(
                "minting needs both PRIVATE_KEY and REWARD_ADDRESS (or neither)"
            )
        if self.mint_token_decimals < 6:
            raise ConfigurationError(
                f"MINT_TOKEN_DECIMALS must be >= 6, got: {self.mint_token_decimals}"
            )
        return self


def _parse(env: Mapping[str, str], name: str, kind: type, default: int | float) -> int | float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be {kind.__name__}, got: {raw!r}") from None
