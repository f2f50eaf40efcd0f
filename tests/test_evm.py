"""
Tests for the web3 mint client.

The node is replaced by FakeEth / FakeContract / FakeAccount so the
submission path runs without a network; sends are counted to check a
mint is broadcast once.

Test plan:
- Construction: missing key / malformed contract → ConfigurationError,
  minter address derived from the key
- is_evm_address: checksum and lowercase accepted, short / non-hex /
  empty rejected
- mint(): invalid destination → MintFailure before anything is sent;
  success returns hash and block, gas is the estimate plus 20%, nonce
  read as "pending"; revert during estimation → MintFailure, nothing
  sent; mined revert (status 0) → MintFailure with the hash; receipt
  timeout after broadcast → MintUnconfirmed with the sent hash
- confirm(): not found → None, mined → MintResult, reverted →
  MintFailure, lookup error → MintUnconfirmed
- With MintTrigger: a receipt timeout keeps the claim, the sweep does
  not resubmit inside the lease, and after the lease it records the
  earlier hash once mined; still one broadcast
- _hex(): bytes and str hashes normalized to 0x-prefixed hex
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from eth_account import Account
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from fassets_pay.errors import ConfigurationError, MintFailure, MintUnconfirmed
from fassets_pay.evm import Web3MintClient, _hex, is_evm_address
from fassets_pay.invoice import InvoiceStatus
from fassets_pay.mint import MintOutcome, MintResult, MintTrigger
from fassets_pay.storage import InvoiceStore

RPC = "http://127.0.0.1:8545"
KEY = "0x" + "11" * 32
CONTRACT = "0x" + "22" * 20
DESTINATION = "0x" + "33" * 20
DEPOSIT = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
SENT = b"\xab" * 32
SENT_HEX = "0x" + "ab" * 32
T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class FakeCall:
    def __init__(self, contract: "FakeContract", args: tuple[Any, ...]) -> None:
        self._contract = contract
        self.args = args

    def estimate_gas(self, params: dict[str, Any]) -> int:
        if self._contract.estimate_error is not None:
            raise self._contract.estimate_error
        return 100_000

    def build_transaction(self, params: dict[str, Any]) -> dict[str, Any]:
        self._contract.built.append(dict(params))
        return {**params, "to": CONTRACT, "data": "0x40c10f19"}


class FakeContract:
    def __init__(self) -> None:
        self.estimate_error: Exception | None = None
        self.built: list[dict[str, Any]] = []
        self.calls: list[tuple[Any, ...]] = []
        self.functions = SimpleNamespace(mint=self._mint)

    def _mint(self, *args: Any) -> FakeCall:
        self.calls.append(args)
        return FakeCall(self, args)


class FakeEth:
    """Node stand-in: counts broadcasts, serves scripted receipts."""

    def __init__(self) -> None:
        self.gas_price = 25
        self.sent: list[bytes] = []
        self.nonce_blocks: list[str] = []
        self.receipt: dict[str, Any] | None = {
            "transactionHash": SENT,
            "status": 1,
            "blockNumber": 42,
        }
        self.wait_error: Exception | None = None
        self.lookup_error: Exception | None = None

    def get_transaction_count(self, address: str, block: str) -> int:
        self.nonce_blocks.append(block)
        return 7

    def send_raw_transaction(self, raw: bytes) -> bytes:
        self.sent.append(raw)
        return SENT

    def wait_for_transaction_receipt(
        self, tx_hash: Any, timeout: float, poll_latency: float
    ) -> dict[str, Any]:
        if self.wait_error is not None:
            raise self.wait_error
        assert self.receipt is not None
        return self.receipt

    def get_transaction_receipt(self, tx_hash: Any) -> dict[str, Any]:
        if self.lookup_error is not None:
            raise self.lookup_error
        if self.receipt is None:
            raise TransactionNotFound(f"Transaction with hash {tx_hash!r} not found")
        return self.receipt


class FakeAccount:
    address = "0x" + "44" * 20

    def __init__(self) -> None:
        self.signed: list[dict[str, Any]] = []

    def sign_transaction(self, tx: dict[str, Any]) -> SimpleNamespace:
        self.signed.append(tx)
        return SimpleNamespace(raw_transaction=b"\x02signed")


def _client() -> tuple[Web3MintClient, FakeEth, FakeContract, FakeAccount]:
    client = Web3MintClient(RPC, KEY, CONTRACT, receipt_timeout=1, poll_interval=0.01)
    eth, contract, account = FakeEth(), FakeContract(), FakeAccount()
    client.w3 = SimpleNamespace(eth=eth)  # type: ignore[assignment]
    client.contract = contract  # type: ignore[assignment]
    client.account = account  # type: ignore[assignment]
    return client, eth, contract, account


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConstruction:
    def test_missing_key(self) -> None:
        with pytest.raises(ConfigurationError, match="private key"):
            Web3MintClient(RPC, "", CONTRACT)

    def test_bad_contract(self) -> None:
        with pytest.raises(ConfigurationError, match="contract"):
            Web3MintClient(RPC, KEY, "0x1234")

    def test_minter_address(self) -> None:
        client = Web3MintClient(RPC, KEY, CONTRACT)
        assert client.address == Account.from_key(KEY).address


class TestIsEvmAddress:
    @pytest.mark.parametrize(
        "value",
        [CONTRACT, "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"],
    )
    def test_valid(self, value: str) -> None:
        assert is_evm_address(value)

    @pytest.mark.parametrize("value", ["", None, "0x1234", "0x" + "zz" * 20])
    def test_invalid(self, value: str | None) -> None:
        assert not is_evm_address(value)


# ---------------------------------------------------------------------------
# mint()
# ---------------------------------------------------------------------------


class TestMint:
    @pytest.mark.asyncio
    async def test_invalid_destination(self) -> None:
        client, eth, _, _ = _client()
        with pytest.raises(MintFailure, match="destination"):
            await client.mint(DEPOSIT, 1)
        assert eth.sent == []

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        client, eth, contract, account = _client()

        result = await client.mint(DESTINATION, 5 * 10**18)

        assert result == MintResult(tx_hash=SENT_HEX, block_number=42)
        assert contract.calls[0][1] == 5 * 10**18
        assert eth.nonce_blocks == ["pending"]
        params = contract.built[0]
        assert params["gas"] == int(100_000 * 1.2)
        assert params["nonce"] == 7
        assert params["gasPrice"] == 25
        assert len(account.signed) == 1
        assert eth.sent == [b"\x02signed"]

    @pytest.mark.asyncio
    async def test_revert_on_estimate(self) -> None:
        client, eth, contract, _ = _client()
        contract.estimate_error = ContractLogicError("execution reverted: not minter")

        with pytest.raises(MintFailure, match="would revert") as exc_info:
            await client.mint(DESTINATION, 1)

        assert not isinstance(exc_info.value, MintUnconfirmed)
        assert exc_info.value.tx_hash is None
        assert eth.sent == []

    @pytest.mark.asyncio
    async def test_mined_revert_carries_hash(self) -> None:
        client, eth, _, _ = _client()
        eth.receipt = {"transactionHash": SENT, "status": 0, "blockNumber": 43}

        with pytest.raises(MintFailure, match="reverted") as exc_info:
            await client.mint(DESTINATION, 1)

        assert not isinstance(exc_info.value, MintUnconfirmed)
        assert exc_info.value.tx_hash == SENT_HEX

    @pytest.mark.asyncio
    async def test_receipt_timeout_is_unconfirmed(self) -> None:
        client, eth, _, _ = _client()
        eth.wait_error = TimeExhausted("Transaction is not in the chain after 1 seconds")

        with pytest.raises(MintUnconfirmed) as exc_info:
            await client.mint(DESTINATION, 1)

        assert exc_info.value.tx_hash == SENT_HEX
        assert len(eth.sent) == 1


# ---------------------------------------------------------------------------
# confirm()
# ---------------------------------------------------------------------------


class TestConfirm:
    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        client, eth, _, _ = _client()
        eth.receipt = None
        assert await client.confirm(SENT_HEX) is None

    @pytest.mark.asyncio
    async def test_mined(self) -> None:
        client, _, _, _ = _client()
        assert await client.confirm(SENT_HEX) == MintResult(tx_hash=SENT_HEX, block_number=42)

    @pytest.mark.asyncio
    async def test_reverted(self) -> None:
        client, eth, _, _ = _client()
        eth.receipt = {"transactionHash": SENT, "status": 0, "blockNumber": 43}
        with pytest.raises(MintFailure) as exc_info:
            await client.confirm(SENT_HEX)
        assert not isinstance(exc_info.value, MintUnconfirmed)

    @pytest.mark.asyncio
    async def test_lookup_error(self) -> None:
        client, eth, _, _ = _client()
        eth.lookup_error = OSError("connection refused")
        with pytest.raises(MintUnconfirmed) as exc_info:
            await client.confirm(SENT_HEX)
        assert exc_info.value.tx_hash == SENT_HEX


# ---------------------------------------------------------------------------
# With MintTrigger
# ---------------------------------------------------------------------------


class TestReceiptTimeoutWithTrigger:
    @pytest.mark.asyncio
    async def test_timed_out_mint_is_broadcast_once(self) -> None:
        clock = FakeClock()
        store = InvoiceStore(":memory:", now_fn=clock)
        client, eth, _, _ = _client()
        trigger = MintTrigger(store, client, lease=timedelta(minutes=10))
        invoice = store.create("user-1", 5_000_000, DEPOSIT, DESTINATION)
        store.transition(invoice.id, "pending", "paid", {"observed_tx_hash": "H1"})
        eth.wait_error = TimeExhausted("Transaction is not in the chain after 1 seconds")
        eth.receipt = None

        first = await trigger.mint(invoice.id)
        assert first.outcome == MintOutcome.UNCONFIRMED
        assert first.tx_hash == SENT_HEX
        held = store.get(invoice.id)
        assert held.mint_submitted_tx_hash == SENT_HEX
        assert held.mint_claimed_at is not None

        # Inside the lease: nothing to do
        assert await trigger.retry_pending() == []

        # Past the lease, still not mined: looked up, not resent
        clock.now = T0 + timedelta(minutes=11)
        attempts = await trigger.retry_pending()
        assert [a.outcome for a in attempts] == [MintOutcome.UNCONFIRMED]

        # Mined by the next check
        clock.now = T0 + timedelta(minutes=22)
        eth.receipt = {"transactionHash": SENT, "status": 1, "blockNumber": 42}
        attempts = await trigger.retry_pending()
        assert [a.outcome for a in attempts] == [MintOutcome.MINTED]

        assert len(eth.sent) == 1
        minted = store.get(invoice.id)
        assert minted.status == InvoiceStatus.PAID
        assert minted.mint_tx_hash == SENT_HEX
        assert minted.mint_block == 42
        assert minted.mint_submitted_tx_hash is None
        assert minted.mint_claimed_at is None


class TestHex:
    def test_bytes(self) -> None:
        assert _hex(b"\xab\xcd") == "0xabcd"

    def test_prefixed_str(self) -> None:
        assert _hex("0xabcd") == "0xabcd"

    def test_bare_str(self) -> None:
        assert _hex("abcd") == "0xabcd"
