import copy
import json
from collections import OrderedDict, defaultdict
from typing import NamedTuple, Optional

import pytest
import rlp
from eth_abi import decode, encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import (
    big_endian_to_int,
    collapse_if_tuple,
    keccak,
    to_canonical_address,
    to_checksum_address,
)
from hexbytes import HexBytes

from provisioning.actors import ActorRegistry
from provisioning.artifacts import ContractArtifacts, _abi_types, _normalize
from provisioning.chain import ChainClient, Receipt
from provisioning.constants import PLANS_DIR
from provisioning.params import ProvisioningPlan
from provisioning.utils import _load_yaml

CHAIN_ID = 31337
ZERO_ADDRESS = "0x" + "0" * 40

AGENT_ROLE = keccak(text="AGENT_ROLE")
TOKEN_ROLE = keccak(text="TOKEN_ROLE")

# issuer, agent and admin share one key
ACTOR_KEYS = OrderedDict(
    [
        ("deployer", "0x" + "11" * 32),
        ("claim_issuer", "0x" + "22" * 32),
        ("token_issuer", "0x" + "33" * 32),
        ("token_agent", "0x" + "33" * 32),
        ("token_admin", "0x" + "33" * 32),
        ("adam", "0x" + "44" * 32),
        ("bob", "0x" + "55" * 32),
        ("charlie", "0x" + "66" * 32),
        ("claim_signer", None),
        ("adam_action", None),
    ]
)


#
# Fixture ABIs
#


def _params(params):
    return [{"name": name, "type": t, "internalType": t} for name, t in params]


def _constructor(*inputs):
    return {"type": "constructor", "inputs": _params(inputs), "stateMutability": "nonpayable"}


def _function(name, inputs=(), outputs=(), view=False):
    return {
        "type": "function",
        "name": name,
        "inputs": _params(inputs),
        "outputs": _params(outputs),
        "stateMutability": "view" if view else "nonpayable",
    }


ACCESS_CONTROL_ABI = [
    _function("grantRole", [("role", "bytes32"), ("account", "address")]),
    _function("hasRole", [("role", "bytes32"), ("account", "address")], [("", "bool")], view=True),
]

IDENTITY_ABI = [
    _function(
        "addKey",
        [("_key", "bytes32"), ("_purpose", "uint256"), ("_type", "uint256")],
        [("success", "bool")],
    ),
    _function(
        "keyHasPurpose", [("_key", "bytes32"), ("_purpose", "uint256")], [("exists", "bool")], True
    ),
    _function(
        "addClaim",
        [
            ("_topic", "uint256"),
            ("_scheme", "uint256"),
            ("_issuer", "address"),
            ("_signature", "bytes"),
            ("_data", "bytes"),
            ("_uri", "string"),
        ],
        [("claimRequestId", "bytes32")],
    ),
    _function("getClaimIdsByTopic", [("_topic", "uint256")], [("claimIds", "bytes32[]")], True),
    _function(
        "getClaim",
        [("_claimId", "bytes32")],
        [
            ("topic", "uint256"),
            ("scheme", "uint256"),
            ("issuer", "address"),
            ("signature", "bytes"),
            ("data", "bytes"),
            ("uri", "string"),
        ],
        True,
    ),
]

FIXTURE_ABIS = OrderedDict(
    [
        (
            "Identity",
            [_constructor(("initialManagementKey", "address"), ("_isLibrary", "bool"))]
            + IDENTITY_ABI,
        ),
        (
            "ImplementationAuthority",
            [
                _constructor(("implementation", "address")),
                _function("getImplementation", [], [("", "address")], True),
            ],
        ),
        (
            "IdentityProxy",
            [
                _constructor(
                    ("_implementationAuthority", "address"), ("initialManagementKey", "address")
                ),
                _function("implementationAuthority", [], [("", "address")], True),
            ],
        ),
        (
            "ClaimIssuer",
            [_constructor(("initialManagementKey", "address"))]
            + IDENTITY_ABI
            + [
                _function(
                    "isClaimValid",
                    [
                        ("_identity", "address"),
                        ("claimTopic", "uint256"),
                        ("sig", "bytes"),
                        ("data", "bytes"),
                    ],
                    [("", "bool")],
                    True,
                )
            ],
        ),
        (
            "ClaimTopicsRegistry",
            [
                _function("addClaimTopic", [("_claimTopic", "uint256")]),
                _function("getClaimTopics", [], [("", "uint256[]")], True),
            ],
        ),
        (
            "ClaimIssuersRegistry",
            [
                _function(
                    "addClaimIssuer", [("_trustedIssuer", "address"), ("_claimTopics", "uint256[]")]
                ),
                _function("isClaimIssuer", [("_issuer", "address")], [("", "bool")], True),
            ],
        ),
        (
            "IdentityRegistryStorage",
            [
                _function("bindIdentityRegistry", [("_identityRegistry", "address")]),
                _function("linkedIdentityRegistries", [], [("", "address[]")], True),
            ],
        ),
        (
            "IdentityRegistry",
            [
                _constructor(
                    ("_claimIssuersRegistry", "address"),
                    ("_claimTopicsRegistry", "address"),
                    ("_identityStorage", "address"),
                ),
                _function(
                    "batchRegisterIdentity",
                    [
                        ("_userAddresses", "address[]"),
                        ("_identities", "address[]"),
                        ("_countries", "uint16[]"),
                    ],
                ),
                _function("contains", [("_wallet", "address")], [("", "bool")], True),
                _function("isVerified", [("_userAddress", "address")], [("", "bool")], True),
            ]
            + ACCESS_CONTROL_ABI,
        ),
        (
            "BasicCompliance",
            [
                _function(
                    "canTransfer",
                    [("_from", "address"), ("_to", "address"), ("_amount", "uint256")],
                    [("", "bool")],
                    True,
                )
            ]
            + ACCESS_CONTROL_ABI,
        ),
        (
            "Token",
            [
                _constructor(
                    ("_identityRegistry", "address"),
                    ("_compliance", "address"),
                    ("_name", "string"),
                    ("_symbol", "string"),
                    ("_decimals", "uint8"),
                    ("_onchainID", "address"),
                ),
                _function("mint", [("_to", "address"), ("_amount", "uint256")]),
                _function("balanceOf", [("account", "address")], [("", "uint256")], True),
            ]
            + ACCESS_CONTROL_ABI,
        ),
    ]
)


def write_artifacts(directory, abis=FIXTURE_ABIS):
    """Writes one Hardhat-style artifact per contract, each with a distinct fake bytecode."""
    directory.mkdir(parents=True, exist_ok=True)
    for index, (name, abi) in enumerate(abis.items(), start=1):
        artifact = {
            "contractName": name,
            "abi": abi,
            "bytecode": f"0x60806040{index:08x}",
        }
        with open(directory / f"{name}.json", "w") as file:
            json.dump(artifact, file)
        with open(directory / f"{name}.dbg.json", "w") as file:
            json.dump({"buildInfo": "../build-info/fake.json"}, file)
    return directory


#
# Contract models
#


class Revert(Exception):
    pass


def _key_hash(address):
    return keccak(encode(["address"], [address]))


class Model:
    def __init__(self, chain, address, artifact, sender):
        self.chain = chain
        self.address = address
        self.artifact = artifact
        self.owner = sender

    @property
    def interface(self):
        return self.artifact

    def only_owner(self, sender):
        if sender != self.owner:
            raise Revert("Ownable: caller is not the owner")


class AccessControlModel(Model):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.roles = defaultdict(set)
        self.grant_count = 0

    def hasRole(self, role, account):
        return account in self.roles[bytes(role)]

    def grantRole(self, sender, role, account):
        self.only_owner(sender)
        self.grant_count += 1
        self.roles[bytes(role)].add(account)


class IdentityModel(Model):
    def __init__(self, chain, address, artifact, sender, initialManagementKey, _isLibrary=False):
        super().__init__(chain, address, artifact, sender)
        self.keys = defaultdict(set)
        self.keys[_key_hash(initialManagementKey)].add(1)
        self.claims = OrderedDict()

    def keyHasPurpose(self, _key, _purpose):
        purposes = self.keys.get(bytes(_key), set())
        return 1 in purposes or _purpose in purposes

    def addKey(self, sender, _key, _purpose, _type):
        if not self.keyHasPurpose(_key_hash(sender), 1):
            raise Revert("Permissions: Sender does not have management key")
        if _purpose in self.keys[bytes(_key)]:
            raise Revert("Conflict: Key already has purpose")
        self.keys[bytes(_key)].add(_purpose)

    def addClaim(self, sender, _topic, _scheme, _issuer, _signature, _data, _uri):
        if not self.keyHasPurpose(_key_hash(sender), 3):
            raise Revert("Permissions: Sender does not have claim signer key")
        issuer = self.chain.contracts.get(_issuer)
        if issuer is None or not issuer.isClaimValid(self.address, _topic, _signature, _data):
            raise Revert("invalid claim")
        claim_id = keccak(encode(["address", "uint256"], [_issuer, _topic]))
        self.claims[claim_id] = (_topic, _scheme, _issuer, bytes(_signature), bytes(_data), _uri)

    def getClaimIdsByTopic(self, _topic):
        return [claim_id for claim_id, claim in self.claims.items() if claim[0] == _topic]

    def getClaim(self, _claimId):
        return self.claims[bytes(_claimId)]


class ClaimIssuerModel(IdentityModel):
    def __init__(self, chain, address, artifact, sender, initialManagementKey):
        super().__init__(chain, address, artifact, sender, initialManagementKey)

    def isClaimValid(self, _identity, claimTopic, sig, data):
        digest = keccak(encode(["address", "uint256", "bytes"], [_identity, claimTopic, data]))
        try:
            signer = Account.recover_message(encode_defunct(primitive=digest), signature=sig)
        except Exception:
            return False
        return self.keyHasPurpose(_key_hash(signer), 3)


class IdentityProxyModel(IdentityModel):
    def __init__(self, chain, address, artifact, sender, _implementationAuthority, initialManagementKey):
        authority = chain.contracts.get(_implementationAuthority)
        if not isinstance(authority, ImplementationAuthorityModel):
            raise Revert("invalid implementation authority")
        super().__init__(chain, address, artifact, sender, initialManagementKey)
        self.authority = _implementationAuthority

    @property
    def interface(self):
        return self.chain.artifacts.get("Identity")

    def implementationAuthority(self):
        return self.authority


class ImplementationAuthorityModel(Model):
    def __init__(self, chain, address, artifact, sender, implementation):
        super().__init__(chain, address, artifact, sender)
        if implementation not in chain.contracts:
            raise Revert("invalid implementation")
        self.implementation = implementation

    def getImplementation(self):
        return self.implementation


class ClaimTopicsRegistryModel(Model):
    def __init__(self, *args):
        super().__init__(*args)
        self.topics = list()

    def addClaimTopic(self, sender, _claimTopic):
        self.only_owner(sender)
        if _claimTopic in self.topics:
            raise Revert("claimTopic already exists")
        self.topics.append(_claimTopic)

    def getClaimTopics(self):
        return list(self.topics)


class ClaimIssuersRegistryModel(Model):
    def __init__(self, *args):
        super().__init__(*args)
        self.issuers = OrderedDict()

    def addClaimIssuer(self, sender, _trustedIssuer, _claimTopics):
        self.only_owner(sender)
        if _trustedIssuer in self.issuers:
            raise Revert("trusted Issuer already exists")
        self.issuers[_trustedIssuer] = list(_claimTopics)

    def isClaimIssuer(self, _issuer):
        return _issuer in self.issuers


class IdentityRegistryStorageModel(Model):
    def __init__(self, *args):
        super().__init__(*args)
        self.linked = list()
        self.identities = OrderedDict()  # wallet -> (identity, country)

    def bindIdentityRegistry(self, sender, _identityRegistry):
        self.only_owner(sender)
        if _identityRegistry in self.linked:
            raise Revert("identity registry already bound")
        self.linked.append(_identityRegistry)

    def linkedIdentityRegistries(self):
        return list(self.linked)


class IdentityRegistryModel(AccessControlModel):
    def __init__(
        self,
        chain,
        address,
        artifact,
        sender,
        _claimIssuersRegistry,
        _claimTopicsRegistry,
        _identityStorage,
    ):
        super().__init__(chain, address, artifact, sender)
        self.issuers_registry = _claimIssuersRegistry
        self.topics_registry = _claimTopicsRegistry
        self.storage = _identityStorage

    def batchRegisterIdentity(self, sender, _userAddresses, _identities, _countries):
        if not self.hasRole(AGENT_ROLE, sender):
            raise Revert("AgentRole: caller does not have the Agent role")
        storage = self.chain.contracts[self.storage]
        if self.address not in storage.linked:
            raise Revert("identity registry is not bound to storage")
        for wallet, identity, country in zip(_userAddresses, _identities, _countries):
            if wallet in storage.identities:
                raise Revert("address stored already")
            storage.identities[wallet] = (identity, country)

    def contains(self, _wallet):
        return _wallet in self.chain.contracts[self.storage].identities

    def isVerified(self, _userAddress):
        entry = self.chain.contracts[self.storage].identities.get(_userAddress)
        if entry is None:
            return False
        identity = self.chain.contracts[entry[0]]
        issuers = self.chain.contracts[self.issuers_registry].issuers
        for topic in self.chain.contracts[self.topics_registry].topics:
            verified = False
            for claim_id in identity.getClaimIdsByTopic(topic):
                _, _, issuer, signature, data, _ = identity.claims[claim_id]
                if topic not in issuers.get(issuer, []):
                    continue
                if self.chain.contracts[issuer].isClaimValid(identity.address, topic, signature, data):
                    verified = True
            if not verified:
                return False
        return True


class BasicComplianceModel(AccessControlModel):
    def canTransfer(self, _from, _to, _amount):
        return True


class TokenModel(AccessControlModel):
    def __init__(
        self, chain, address, artifact, sender,
        _identityRegistry, _compliance, _name, _symbol, _decimals, _onchainID,
    ):
        super().__init__(chain, address, artifact, sender)
        self.identity_registry = _identityRegistry
        self.compliance = _compliance
        self.name = _name
        self.symbol = _symbol
        self.decimals = _decimals
        self.onchain_id = _onchainID
        self.balances = defaultdict(int)

    def mint(self, sender, _to, _amount):
        if not self.hasRole(AGENT_ROLE, sender):
            raise Revert("AgentRole: caller does not have the Agent role")
        if not self.chain.contracts[self.identity_registry].isVerified(_to):
            raise Revert("Identity is not verified.")
        if not self.chain.contracts[self.compliance].hasRole(TOKEN_ROLE, self.address):
            raise Revert("Compliance not bound to token")
        self.balances[_to] += _amount

    def balanceOf(self, account):
        return self.balances[account]


MODELS = {
    "Identity": IdentityModel,
    "ImplementationAuthority": ImplementationAuthorityModel,
    "IdentityProxy": IdentityProxyModel,
    "ClaimIssuer": ClaimIssuerModel,
    "ClaimTopicsRegistry": ClaimTopicsRegistryModel,
    "ClaimIssuersRegistry": ClaimIssuersRegistryModel,
    "IdentityRegistryStorage": IdentityRegistryStorageModel,
    "IdentityRegistry": IdentityRegistryModel,
    "BasicCompliance": BasicComplianceModel,
    "Token": TokenModel,
}


#
# Fake chain
#


class LoggedTransaction(NamedTuple):
    kind: str  # "create" or "call"
    sender: str
    nonce: int
    to: Optional[str]
    contract: str  # artifact name
    method: Optional[str]
    args: list
    block_number: int
    status: int
    transaction_type: int
    chain_id: int
    max_priority_fee: int
    max_fee: int
    gas: int


def decode_constructor_args(artifact, data):
    """Decodes the constructor arguments appended to an artifact's creation bytecode."""
    data = bytes(data)
    if not data.startswith(bytes(artifact.bytecode)):
        raise ValueError(f"Creation data does not match {artifact.name} bytecode.")
    input_types = _abi_types(artifact.constructor_inputs)
    values = decode(input_types, data[len(artifact.bytecode) :])
    return [_normalize(t, v) for t, v in zip(input_types, values)]


def _default(abi_type):
    if abi_type.endswith("]"):
        return []
    if abi_type == "bool":
        return False
    if abi_type.startswith(("uint", "int")):
        return 0
    if abi_type == "address":
        return ZERO_ADDRESS
    if abi_type == "string":
        return ""
    if abi_type.startswith("bytes") and abi_type != "bytes":
        return b"\x00" * int(abi_type[5:])
    return b""


class FakeChain(ChainClient):
    """
    In-memory chain executing signed raw transactions against contract models.

    read_lag: number of reads after each write that still return default values.
    stall_after: number of receipts served before every later receipt wait times out.
    """

    def __init__(self, artifacts, chain_id=CHAIN_ID, read_lag=0, stall_after=None, start_nonce=0):
        self.artifacts = artifacts
        self._chain_id = chain_id
        self.read_lag = read_lag
        self.stall_after = stall_after
        self.start_nonce = start_nonce
        self.contracts = dict()
        self.nonces = dict()
        self.receipts = dict()
        self.log = list()
        self.pending = None
        self.block_number = 0
        self.receipts_served = 0
        self._stale_reads = 0

    @property
    def chain_id(self):
        return self._chain_id

    def get_nonce(self, address):
        return self.nonces.get(address, self.start_nonce)

    def get_balance(self, address):
        return 10**18

    def send_raw_transaction(self, raw_transaction):
        assert self.pending is None, "transaction sent before the previous receipt was awaited"
        raw_transaction = bytes(raw_transaction)
        assert raw_transaction[0] == 2, "not an EIP-1559 transaction"
        sender = Account.recover_transaction(raw_transaction)
        fields = rlp.decode(raw_transaction[1:])
        chain_id, nonce = big_endian_to_int(fields[0]), big_endian_to_int(fields[1])
        assert chain_id == self._chain_id, f"wrong chain id {chain_id}"
        assert nonce == self.get_nonce(sender), f"unexpected nonce {nonce} for {sender}"
        self.nonces[sender] = nonce + 1
        self.block_number += 1

        to, data = fields[5], bytes(fields[7])
        status, contract_address = 1, None
        entry = dict(
            sender=sender,
            nonce=nonce,
            block_number=self.block_number,
            transaction_type=raw_transaction[0],
            chain_id=chain_id,
            max_priority_fee=big_endian_to_int(fields[2]),
            max_fee=big_endian_to_int(fields[3]),
            gas=big_endian_to_int(fields[4]),
        )
        if to == b"":
            address = to_checksum_address(keccak(rlp.encode([to_canonical_address(sender), nonce]))[12:])
            artifact = self._match_bytecode(data)
            args = decode_constructor_args(artifact, data)
            entry.update(kind="create", to=None, contract=artifact.name, method=None, args=args)
            try:
                self.contracts[address] = MODELS[artifact.name](self, address, artifact, sender, *args)
                contract_address = address
            except Revert:
                status = 0
        else:
            to = to_checksum_address(to)
            model = self.contracts[to]
            abi, args = model.interface.decode_input(data)
            entry.update(kind="call", to=to, contract=model.artifact.name, method=abi["name"], args=args)
            try:
                getattr(model, abi["name"])(sender, *args)
            except Revert:
                status = 0

        self.log.append(LoggedTransaction(status=status, **entry))
        tx_hash = keccak(raw_transaction)
        self.receipts[tx_hash] = Receipt(
            tx_hash=HexBytes(tx_hash),
            status=status,
            contract_address=contract_address,
            block_number=self.block_number,
        )
        self.pending = tx_hash
        self._stale_reads = self.read_lag
        return HexBytes(tx_hash)

    def _match_bytecode(self, data):
        for artifact in self.artifacts:
            if artifact.bytecode and data.startswith(bytes(artifact.bytecode)):
                return artifact
        raise AssertionError("creation data does not match any artifact")

    def wait_for_receipt(self, tx_hash, timeout, poll_interval):
        if self.stall_after is not None and self.receipts_served >= self.stall_after:
            raise self.ReceiptTimeout(f"No receipt after {timeout} seconds")
        assert self.pending == bytes(tx_hash), "waiting on an unknown transaction"
        self.pending = None
        self.receipts_served += 1
        return self.receipts[bytes(tx_hash)]

    def call(self, to, data):
        model = self.contracts[to_checksum_address(to)]
        abi, args = model.interface.decode_input(data)
        output_types = [collapse_if_tuple(o) for o in abi["outputs"]]
        if self._stale_reads > 0:
            self._stale_reads -= 1
            values = [_default(t) for t in output_types]
        else:
            result = getattr(model, abi["name"])(*args)
            values = list(result) if len(output_types) > 1 else [result]
        return encode(output_types, values)

    #
    # Assertions helpers
    #

    def creations(self):
        return [tx for tx in self.log if tx.kind == "create"]

    def calls(self, method=None):
        return [tx for tx in self.log if tx.kind == "call" and method in (None, tx.method)]

    def created_at(self, address):
        """Block number of the transaction that created a contract."""
        for tx in self.creations():
            expected = keccak(rlp.encode([to_canonical_address(tx.sender), tx.nonce]))[12:]
            if to_checksum_address(expected) == address:
                return tx.block_number
        return None


#
# Fixtures
#


@pytest.fixture()
def artifacts_dir(tmp_path):
    return write_artifacts(tmp_path / "build")


@pytest.fixture()
def artifacts(artifacts_dir):
    return ContractArtifacts.from_paths([artifacts_dir])


@pytest.fixture()
def actors():
    return ActorRegistry.from_keys(ACTOR_KEYS)


@pytest.fixture()
def chain(artifacts):
    return FakeChain(artifacts)


@pytest.fixture()
def make_chain(artifacts):
    def _make_chain(**kwargs):
        return FakeChain(artifacts, **kwargs)

    return _make_chain


@pytest.fixture()
def full_config():
    """The shipped Fresh plan, retargeted to the local fake chain."""
    config = copy.deepcopy(_load_yaml(PLANS_DIR / "full.yml"))
    config["deployment"]["chain_id"] = CHAIN_ID
    config.pop("artifacts", None)
    config["consistency"] = {"timeout": 10, "interval": 1}
    return config


@pytest.fixture()
def reuse_config():
    """The shipped Reuse plan, retargeted to the local fake chain."""
    config = copy.deepcopy(_load_yaml(PLANS_DIR / "reuse.yml"))
    config["deployment"]["chain_id"] = CHAIN_ID
    config["consistency"] = {"timeout": 10, "interval": 1}
    return config


@pytest.fixture()
def full_plan(full_config):
    return ProvisioningPlan(config=full_config)


