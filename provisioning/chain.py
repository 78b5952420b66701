import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, NamedTuple, Optional, Union

from eth_typing import ChecksumAddress
from eth_utils import encode_hex, to_checksum_address
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted

from provisioning.constants import (
    DEFAULT_CONSISTENCY_INTERVAL,
    DEFAULT_CONSISTENCY_TIMEOUT,
    DEFAULT_GAS_LIMIT,
    DEFAULT_MAX_FEE,
    DEFAULT_MAX_PRIORITY_FEE,
    EIP1559_TRANSACTION_TYPE,
    PROVIDER_URIS,
)


class Receipt(NamedTuple):
    tx_hash: HexBytes
    status: int
    contract_address: Optional[ChecksumAddress]
    block_number: int


class ChainClient(ABC):
    """
    Submits signed transactions, reads receipts and queries account and contract state.
    """

    class ReceiptTimeout(Exception):
        """Raised when a transaction receipt is not available before the timeout"""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_nonce(self, address: ChecksumAddress) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_balance(self, address: ChecksumAddress) -> int:
        raise NotImplementedError

    @abstractmethod
    def send_raw_transaction(self, raw_transaction: bytes) -> HexBytes:
        raise NotImplementedError

    @abstractmethod
    def wait_for_receipt(self, tx_hash: bytes, timeout: float, poll_interval: float) -> Receipt:
        raise NotImplementedError

    @abstractmethod
    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        raise NotImplementedError


class Web3ChainClient(ChainClient):
    def __init__(self, w3: Web3):
        self.w3 = w3

    @classmethod
    def from_network(cls, network: str, api_key: Optional[str] = None) -> "Web3ChainClient":
        try:
            uri_template = PROVIDER_URIS[network]
        except KeyError:
            raise ValueError(f"Unsupported network '{network}'")
        uri = uri_template.format(api_key=api_key or "")
        return cls(Web3(Web3.HTTPProvider(uri)))

    @property
    def chain_id(self) -> int:
        return self.w3.eth.chain_id

    def get_nonce(self, address: ChecksumAddress) -> int:
        return self.w3.eth.get_transaction_count(address, "pending")

    def get_balance(self, address: ChecksumAddress) -> int:
        return self.w3.eth.get_balance(address)

    def send_raw_transaction(self, raw_transaction: bytes) -> HexBytes:
        return HexBytes(self.w3.eth.send_raw_transaction(raw_transaction))

    def wait_for_receipt(self, tx_hash: bytes, timeout: float, poll_interval: float) -> Receipt:
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_interval
            )
        except TimeExhausted as e:
            raise self.ReceiptTimeout(
                f"No receipt for {encode_hex(tx_hash)} after {timeout} seconds"
            ) from e
        contract_address = receipt.get("contractAddress")
        return Receipt(
            tx_hash=HexBytes(receipt["transactionHash"]),
            status=receipt["status"],
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            block_number=receipt["blockNumber"],
        )

    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        return bytes(self.w3.eth.call({"to": to, "data": HexBytes(data)}))


def _to_wei(value: Union[int, str]) -> int:
    """Accepts wei as an int or a '<amount> <unit>' string (e.g. '5 gwei')."""
    if isinstance(value, int):
        return value
    parts = str(value).split()
    if len(parts) == 1:
        return int(parts[0])
    if len(parts) != 2:
        raise ValueError(f"Invalid fee amount '{value}'")
    amount, unit = parts
    return Web3.to_wei(amount, unit.lower())


class FeePolicy(NamedTuple):
    max_priority_fee: int  # wei
    max_fee: int  # wei
    gas_limit: int

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None, **overrides) -> "FeePolicy":
        config = dict(config or {})
        config.update({k: v for k, v in overrides.items() if v is not None})
        policy = cls(
            max_priority_fee=_to_wei(config.get("max_priority_fee", DEFAULT_MAX_PRIORITY_FEE)),
            max_fee=_to_wei(config.get("max_fee", DEFAULT_MAX_FEE)),
            gas_limit=int(config.get("gas_limit", DEFAULT_GAS_LIMIT)),
        )
        if policy.max_priority_fee > policy.max_fee:
            raise ValueError(
                f"max_priority_fee ({policy.max_priority_fee}) exceeds max_fee ({policy.max_fee})"
            )
        if policy.gas_limit <= 0:
            raise ValueError("gas_limit must be positive")
        return policy


class TransactionBuilder:
    """
    Assembles EIP-1559 transactions with explicit fees, gas limit and chain id.

    The nonce is read from the chain client right before each transaction is
    built; the builder also keeps the next expected nonce per sender so that a
    stale provider count can never cause a nonce to be used twice.
    """

    def __init__(self, chain: ChainClient, chain_id: int, fee_policy: FeePolicy):
        self.chain = chain
        self.chain_id = chain_id
        self.fee_policy = fee_policy
        self._next_nonce: Dict[str, int] = dict()

    def next_nonce(self, sender: ChecksumAddress) -> int:
        chain_nonce = self.chain.get_nonce(sender)
        return max(chain_nonce, self._next_nonce.get(sender, 0))

    def build(
        self,
        sender: ChecksumAddress,
        data: bytes,
        to: Optional[ChecksumAddress] = None,
        value: int = 0,
    ) -> Dict[str, Any]:
        nonce = self.next_nonce(sender)
        transaction = {
            "type": EIP1559_TRANSACTION_TYPE,
            "chainId": self.chain_id,
            "nonce": nonce,
            "value": value,
            "data": HexBytes(data),
            "gas": self.fee_policy.gas_limit,
            "maxPriorityFeePerGas": self.fee_policy.max_priority_fee,
            "maxFeePerGas": self.fee_policy.max_fee,
        }
        if to is not None:
            transaction["to"] = to
        return transaction

    def consume(self, sender: ChecksumAddress, nonce: int) -> None:
        """Records that a transaction with this nonce was broadcast."""
        self._next_nonce[sender] = max(self._next_nonce.get(sender, 0), nonce + 1)


class ReadConsistency:
    """
    Polls a read until it reflects a prior write, bounded by both a number
    of attempts and a deadline.
    """

    class Timeout(Exception):
        """Raised when the expected state does not become visible in time"""

    def __init__(
        self,
        timeout: float = DEFAULT_CONSISTENCY_TIMEOUT,
        interval: float = DEFAULT_CONSISTENCY_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("consistency interval must be positive")
        self.timeout = timeout
        self.interval = interval
        self.retries = max(1, math.ceil(timeout / interval))
        self._sleep = sleep
        self._clock = clock

    def wait_until(self, predicate: Callable[[], bool], description: str) -> None:
        deadline = self._clock() + self.timeout
        for attempt in range(self.retries + 1):
            if predicate():
                return
            if attempt == self.retries or self._clock() >= deadline:
                break
            print(f"(i) Waiting for {description}...")
            self._sleep(self.interval)
        raise self.Timeout(f"{description} not visible after {self.timeout} seconds")
