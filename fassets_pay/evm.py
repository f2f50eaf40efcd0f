"""
Web3 mint client: the second-ledger submission capability.

Calls ``mint(address to, uint256 amount)`` on the reward/FAsset token
contract with a locally held key, waits for the receipt, and returns
the transaction hash and block. web3.py is synchronous; each mint runs
in a worker thread so the event loop (and the observers) keep going
while a mint confirms.

Mints from one client are serialized: the nonce is read from the node
per submission, so two in flight at once would collide.

Once a transaction is sent, a failure to see its receipt raises
MintUnconfirmed with the hash; confirm() looks it up later.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

from fassets_pay.errors import ConfigurationError, MintFailure, MintUnconfirmed
from fassets_pay.mint import MintResult


def is_evm_address(value: Optional[str]) -> bool:
    """Check that value is a 20-byte hex address (checksum or lowercase)."""
    return bool(value) and Web3.is_address(value)


class Web3MintClient:
    """
    MintClient backed by web3.py.

    To use this client, you'll need:
    - An EVM RPC endpoint (Flare / Coston2)
    - A private key allowed to call mint() on the contract
    - The token contract address
    """

    # ABI for the mintable token contract
    MINT_ABI = [
        {
            "inputs": [
                {"internalType": "address", "name": "to", "type": "address"},
                {"internalType": "uint256", "name": "amount", "type": "uint256"}
            ],
            "name": "mint",
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function"
        }
    ]

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        receipt_timeout: int = 120,
        poll_interval: float = 1.0,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the Web3MintClient

        Args:
            rpc_url: EVM RPC endpoint URL
            private_key: Hex private key of the minter account
            contract_address: Token contract address
            receipt_timeout: Seconds to wait for the mint receipt
            poll_interval: Seconds between receipt polls
            logger: Optional logger instance

        Raises:
            ConfigurationError: If the key or contract address is missing or malformed
        """
        if not private_key:
            raise ConfigurationError("minting requires a private key")
        if not is_evm_address(contract_address):
            raise ConfigurationError(f"invalid mint contract address: {contract_address!r}")

        self.logger = logger or logging.getLogger(__name__)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        try:
            self.account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"invalid minting private key: {e}") from e
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=self.MINT_ABI
        )
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        """Minter account address"""
        return self.account.address

    async def mint(self, to_address: str, amount: int) -> MintResult:
        """
        Mint ``amount`` token units to ``to_address`` and wait for confirmation

        Raises:
            MintUnconfirmed: If the transaction was sent but no receipt was seen
            MintFailure: If building, signing or sending fails, or the mint reverts
        """
        if not is_evm_address(to_address):
            raise MintFailure(f"invalid destination address: {to_address!r}")
        async with self._lock:
            return await asyncio.to_thread(self._mint_sync, to_address, amount)

    async def confirm(self, tx_hash: str) -> Optional[MintResult]:
        """
        Look up a mint sent earlier

        Returns:
            MintResult if it was mined successfully, None if it is not mined yet

        Raises:
            MintUnconfirmed: If the receipt lookup fails
            MintFailure: If the mint was mined and reverted
        """
        return await asyncio.to_thread(self._confirm_sync, tx_hash)

    def _mint_sync(self, to_address: str, amount: int) -> MintResult:
        to_checksum = Web3.to_checksum_address(to_address)
        call = self.contract.functions.mint(to_checksum, amount)

        try:
            nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
            try:
                gas = int(call.estimate_gas({"from": self.account.address}) * 1.2)
                self.logger.debug(f"Estimated gas: {gas}")
            except Web3Exception as e:
                # A revert during estimation will revert on-chain too
                raise MintFailure(f"mint would revert: {e}") from e

            tx_params: Dict[str, Any] = {
                "from": self.account.address,
                "nonce": nonce,
                "gas": gas,
                "gasPrice": self.w3.eth.gas_price,
            }
            tx = call.build_transaction(tx_params)
            signed = self.account.sign_transaction(tx)
            sent = _hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        except MintFailure:
            raise
        except Web3Exception as e:
            self.logger.error(f"Web3 error during mint: {e}")
            raise MintFailure(f"mint failed: {e}") from e
        except (ValueError, OSError) as e:
            # RPC error payloads surface as ValueError, transport errors as OSError
            self.logger.error(f"Mint RPC error: {e}")
            raise MintFailure(f"mint failed: {e}") from e

        self.logger.info(f"Mint transaction sent: {sent}")

        # Broadcast: from here on every failure must carry the hash
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                sent,
                timeout=self.receipt_timeout,
                poll_latency=self.poll_interval
            )
        except (Web3Exception, ValueError, OSError) as e:
            self.logger.error(f"Mint {sent} sent but not confirmed: {e}")
            raise MintUnconfirmed(f"mint {sent} sent but not confirmed: {e}", tx_hash=sent) from e

        return self._result(receipt)

    def _confirm_sync(self, tx_hash: str) -> Optional[MintResult]:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, ValueError, OSError) as e:
            raise MintUnconfirmed(f"receipt lookup for {tx_hash} failed: {e}", tx_hash=tx_hash) from e
        return self._result(receipt)

    def _result(self, receipt: Any) -> MintResult:
        tx_hex = _hex(receipt["transactionHash"])
        if receipt["status"] != 1:
            raise MintFailure(f"mint reverted in block {receipt['blockNumber']}", tx_hash=tx_hex)
        return MintResult(tx_hash=tx_hex, block_number=receipt["blockNumber"])


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    else:
        text = str(value)
    return text if text.startswith("0x") else "0x" + text
