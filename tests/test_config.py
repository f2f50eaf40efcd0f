"""
Tests for Settings.

Test plan:
- from_env: defaults, overrides, numeric parsing errors, .env file
  values under explicit environ values
- validate: missing / malformed deposit address, unknown observer mode,
  non-positive periods, half-configured minting, decimals < 6
- Derived: invoice_ttl, mint_lease, mint_enabled, poll/subscribe flags
"""

from datetime import timedelta
from pathlib import Path

import pytest

from fassets_pay.config import Settings, is_classic_address
from fassets_pay.errors import ConfigurationError

DEPOSIT = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
CONTRACT = "0x" + "22" * 20


class TestFromEnv:
    def test_defaults(self) -> None:
        settings = Settings.from_env({"XRPL_DEPOSIT_ADDRESS": DEPOSIT})
        assert settings.deposit_address == DEPOSIT
        assert settings.invoice_ttl == timedelta(minutes=30)
        assert settings.poll_interval == 5.0
        assert settings.account_tx_limit == 20
        assert settings.observer_mode == "both"
        assert settings.mint_token_decimals == 18
        assert settings.mint_enabled is False
        assert settings.log_level == "INFO"

    def test_overrides(self) -> None:
        settings = Settings.from_env({
            "XRPL_DEPOSIT_ADDRESS": DEPOSIT,
            "XRPL_RPC_URL": "http://localhost:5005",
            "INVOICE_TTL_SECONDS": "60",
            "POLL_INTERVAL_SECONDS": "0.5",
            "OBSERVER_MODE": "Poll",
            "PRIVATE_KEY": "0x" + "01" * 32,
            "REWARD_ADDRESS": CONTRACT,
            "MINT_LEASE_SECONDS": "900",
            "LOG_LEVEL": "debug",
        })
        assert settings.xrpl_rpc_url == "http://localhost:5005"
        assert settings.invoice_ttl == timedelta(seconds=60)
        assert settings.poll_interval == 0.5
        assert settings.observer_mode == "poll"
        assert settings.poll_enabled and not settings.subscribe_enabled
        assert settings.mint_enabled
        assert settings.mint_lease == timedelta(minutes=15)
        assert settings.log_level == "DEBUG"

    def test_bad_number(self) -> None:
        with pytest.raises(ConfigurationError, match="ACCOUNT_TX_LIMIT"):
            Settings.from_env({"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "ACCOUNT_TX_LIMIT": "ten"})

    def test_dotenv_file_under_environ(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text(
            f"XRPL_DEPOSIT_ADDRESS={DEPOSIT}\nPOLL_INTERVAL_SECONDS=9\nOBSERVER_MODE=poll\n"
        )
        settings = Settings.from_env({"OBSERVER_MODE": "subscribe"}, dotenv_path=env_file)
        assert settings.deposit_address == DEPOSIT
        assert settings.poll_interval == 9.0
        assert settings.observer_mode == "subscribe"


class TestValidate:
    def test_valid(self) -> None:
        settings = Settings.from_env({"XRPL_DEPOSIT_ADDRESS": DEPOSIT})
        assert settings.validate() is settings

    def test_missing_deposit_address(self) -> None:
        with pytest.raises(ConfigurationError, match="required"):
            Settings.from_env({}).validate()

    def test_malformed_deposit_address(self) -> None:
        with pytest.raises(ConfigurationError, match="classic"):
            Settings.from_env({"XRPL_DEPOSIT_ADDRESS": "0xabc"}).validate()

    def test_unknown_mode(self) -> None:
        settings = Settings.from_env({"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "OBSERVER_MODE": "push"})
        with pytest.raises(ConfigurationError, match="OBSERVER_MODE"):
            settings.validate()

    def test_non_positive_period(self) -> None:
        settings = Settings.from_env(
            {"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "POLL_INTERVAL_SECONDS": "0"}
        )
        with pytest.raises(ConfigurationError, match="poll_interval"):
            settings.validate()

    def test_key_without_contract(self) -> None:
        settings = Settings.from_env(
            {"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "PRIVATE_KEY": "0x" + "01" * 32}
        )
        assert settings.mint_enabled is False
        with pytest.raises(ConfigurationError, match="REWARD_ADDRESS"):
            settings.validate()

    def test_contract_without_key(self) -> None:
        settings = Settings.from_env({"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "REWARD_ADDRESS": CONTRACT})
        with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
            settings.validate()

    def test_low_decimals(self) -> None:
        settings = Settings.from_env(
            {"XRPL_DEPOSIT_ADDRESS": DEPOSIT, "MINT_TOKEN_DECIMALS": "2"}
        )
        with pytest.raises(ConfigurationError, match="DECIMALS"):
            settings.validate()


class TestClassicAddress:
    @pytest.mark.parametrize("value", [DEPOSIT, "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"])
    def test_valid(self, value: str) -> None:
        assert is_classic_address(value)

    @pytest.mark.parametrize("value", ["", None, "xHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh", "r0OIl"])
    def test_invalid(self, value: str | None) -> None:
        assert not is_classic_address(value)
