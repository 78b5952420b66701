from collections import OrderedDict
from typing import Any, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import encode_hex, to_checksum_address
from hexbytes import HexBytes

from provisioning.actors import ActorRegistry
from provisioning.artifacts import ContractArtifact, DeployedContract
from provisioning.chain import ChainClient, FeePolicy, Receipt, TransactionBuilder
from provisioning.confirm import _confirm_resolution, _continue
from provisioning.constants import (
    DEFAULT_RECEIPT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
    DEPLOYER,
)


class TransactionRecord(NamedTuple):
    label: str
    sender: str
    nonce: int
    tx_hash: HexBytes
    to: Optional[ChecksumAddress]
    block_number: int


class Transactor:
    """
    Represents the actor cast plus validated/annotated transaction execution.
    Every transaction is built with the fee policy, signed by the sending
    actor and awaited until its receipt is available.
    """

    class TransactionFailed(Exception):
        """Raised when a transaction is mined with a failure status"""

    def __init__(
        self,
        chain: ChainClient,
        actors: ActorRegistry,
        fee_policy: FeePolicy,
        chain_id: Optional[int] = None,
        autosign: bool = False,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        poll_interval: float = DEFAULT_RECEIPT_POLL_INTERVAL,
    ):
        self.chain = chain
        self.actors = actors
        self.chain_id = chain.chain_id if chain_id is None else chain_id
        self.builder = TransactionBuilder(chain=chain, chain_id=self.chain_id, fee_policy=fee_policy)
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.transactions: List[TransactionRecord] = list()
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self._autosign = autosign

    def _send(
        self, sender: str, data: bytes, to: Optional[ChecksumAddress], label: str
    ) -> Receipt:
        sender_address = self.actors.address(sender)
        transaction = self.builder.build(sender=sender_address, data=data, to=to)
        signed_transaction = self.actors.sign_transaction(sender, transaction)
        tx_hash = self.chain.send_raw_transaction(signed_transaction.raw_transaction)
        self.builder.consume(sender_address, transaction["nonce"])

        receipt = self.chain.wait_for_receipt(
            tx_hash, timeout=self.receipt_timeout, poll_interval=self.poll_interval
        )
        self.transactions.append(
            TransactionRecord(
                label=label,
                sender=sender,
                nonce=transaction["nonce"],
                tx_hash=HexBytes(tx_hash),
                to=to,
                block_number=receipt.block_number,
            )
        )
        if receipt.status != 1:
            raise self.TransactionFailed(f"{label} failed in transaction {encode_hex(tx_hash)}")
        return receipt

    def transact(
        self, contract: DeployedContract, method: str, *args, sender: str = DEPLOYER
    ) -> Receipt:
        _, named_args = contract.artifact.validate_args(method, args)
        base_message = (
            f"\nTransacting {contract.name}[{contract.address[:10]}].{method} as {sender}"
        )
        if named_args:
            pretty_args = "\n\t".join(f"{k}={_pretty(v)}" for k, v in named_args.items())
            message = f"{base_message} with arguments:\n\t{pretty_args}"
        else:
            message = f"{base_message} with no arguments"
        print(message)
        if not self._autosign:
            _continue()

        data = contract.artifact.encode_call(method, args)
        return self._send(
            sender=sender, data=data, to=contract.address, label=f"{contract.name}.{method}"
        )

    def call(self, contract: DeployedContract, method: str, *args) -> Any:
        """Executes a read-only call and decodes its output."""
        data = contract.artifact.encode_call(method, args)
        result = self.chain.call(to=contract.address, data=data)
        return contract.artifact.decode_output(method, result, args)


class Deployer(Transactor):
    """
    Deploys contracts from artifacts, or binds logical names to known addresses.
    """

    def deploy(
        self,
        name: str,
        artifact: ContractArtifact,
        resolved_params: OrderedDict,
        interface: Optional[ContractArtifact] = None,
        sender: str = DEPLOYER,
    ) -> DeployedContract:
        print(f"\nDeploying {name} ({artifact.name})...")
        if not self._autosign:
            _confirm_resolution(resolved_params, name)
        data = artifact.encode_deployment(list(resolved_params.values()))
        receipt = self._send(sender=sender, data=data, to=None, label=f"deploy {name}")
        if not receipt.contract_address:
            raise self.TransactionFailed(
                f"Deployment of {name} returned no contract address "
                f"(transaction {encode_hex(receipt.tx_hash)})"
            )
        print(f"{name} Contract Address: {receipt.contract_address}")
        return DeployedContract(
            name=name,
            address=receipt.contract_address,
            artifact=interface or artifact,
            receipt=receipt,
        )

    def at(self, name: str, artifact: ContractArtifact, address: str) -> DeployedContract:
        address = to_checksum_address(address)
        print(f"Binding {name} ({artifact.name}) at {address}")
        return DeployedContract(name=name, address=address, artifact=artifact)


def _pretty(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return encode_hex(value)
    if isinstance(value, (list, tuple)):
        return [_pretty(v) for v in value]
    return value
