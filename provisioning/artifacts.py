import typing
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence

from eth_abi import decode, encode, is_encodable
from eth_typing import ChecksumAddress
from eth_utils import (
    collapse_if_tuple,
    encode_hex,
    function_signature_to_4byte_selector,
    is_same_address,
    to_checksum_address,
)
from hexbytes import HexBytes

from provisioning.chain import Receipt
from provisioning.utils import _load_json

ABIEntry = typing.Dict[str, Any]


def _abi_types(params: Sequence[ABIEntry]) -> List[str]:
    return [collapse_if_tuple(param) for param in params]


def _signature(abi: ABIEntry) -> str:
    return f"{abi['name']}({','.join(_abi_types(abi.get('inputs', [])))})"


def _selector(abi: ABIEntry) -> bytes:
    return function_signature_to_4byte_selector(_signature(abi))


def _normalize(abi_type: str, value: Any) -> Any:
    """Checksums decoded addresses (eth-abi returns them lowercase)."""
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type.endswith("]") and isinstance(value, (list, tuple)):
        inner_type = abi_type[: abi_type.rindex("[")]
        return [_normalize(inner_type, item) for item in value]
    return value


class ContractArtifact:
    """ABI and creation bytecode of a single compiled contract."""

    def __init__(self, name: str, abi: List[ABIEntry], bytecode: str = "0x"):
        self.name = name
        self.abi = abi
        self.bytecode = HexBytes(bytecode or "0x")

    def __repr__(self) -> str:
        return f"<ContractArtifact {self.name}>"

    @classmethod
    def from_file(cls, filepath: Path) -> "ContractArtifact":
        """Loads a Hardhat ({abi, bytecode}) or Foundry ({abi, bytecode: {object}}) artifact."""
        data = _load_json(filepath)
        if "abi" not in data:
            raise ValueError(f"No ABI found in artifact {filepath}.")
        bytecode = data.get("bytecode", "0x")
        if isinstance(bytecode, dict):
            bytecode = bytecode.get("object", "0x")
        name = data.get("contractName") or filepath.name.replace(".json", "")
        return cls(name=name, abi=data["abi"], bytecode=bytecode)

    @property
    def constructor_inputs(self) -> List[ABIEntry]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return entry.get("inputs", [])
        return []

    def methods(self, method_name: str) -> List[ABIEntry]:
        return [
            entry
            for entry in self.abi
            if entry.get("type") == "function" and entry.get("name") == method_name
        ]

    def has_method(self, method_name: str) -> bool:
        return bool(self.methods(method_name))

    def validate_args(self, method_name: str, args: Sequence[Any]) -> typing.Tuple[ABIEntry, Dict]:
        """
        Selects the method ABI matching the given arguments (by arity and
        encodability) and returns it together with the named arguments.
        """
        method_abis = self.methods(method_name)
        if len(method_abis) == 0:
            raise ValueError(f"{self.name} has no method named '{method_name}'")

        abis_matching_args_length = [
            abi for abi in method_abis if len(abi.get("inputs", [])) == len(args)
        ]
        for abi in abis_matching_args_length:
            named_args = OrderedDict()
            for position, (arg, abi_input) in enumerate(zip(args, abi["inputs"])):
                if not is_encodable(collapse_if_tuple(abi_input), arg):
                    break
                named_args[abi_input.get("name") or f"arg{position}"] = arg
            else:
                return abi, named_args
        raise ValueError(
            f"Could not find ABI for '{self.name}.{method_name}' with {len(args)} arg(s) "
            "and given type(s)"
        )

    def encode_deployment(self, args: Sequence[Any] = ()) -> HexBytes:
        if not self.bytecode:
            raise ValueError(f"{self.name} artifact has no creation bytecode.")
        types = _abi_types(self.constructor_inputs)
        if len(types) != len(args):
            raise ValueError(
                f"{self.name} constructor requires {len(types)} argument(s), got {len(args)}."
            )
        return HexBytes(bytes(self.bytecode) + encode(types, list(args)))

    def encode_call(self, method_name: str, args: Sequence[Any] = ()) -> HexBytes:
        abi, _ = self.validate_args(method_name, args)
        encoded_args = encode(_abi_types(abi["inputs"]), list(args))
        return HexBytes(_selector(abi) + encoded_args)

    def decode_output(self, method_name: str, data: bytes, args: Sequence[Any] = ()) -> Any:
        abi, _ = self.validate_args(method_name, args)
        output_types = _abi_types(abi.get("outputs", []))
        values = decode(output_types, bytes(data))
        values = [_normalize(t, v) for t, v in zip(output_types, values)]
        if len(values) == 1:
            return values[0]
        return tuple(values)

    def method_by_selector(self, selector: bytes) -> Optional[ABIEntry]:
        for entry in self.abi:
            if entry.get("type") == "function" and _selector(entry) == bytes(selector):
                return entry
        return None

    def decode_input(self, data: bytes) -> typing.Tuple[ABIEntry, List[Any]]:
        """Decodes calldata into (method ABI, arguments)."""
        data = bytes(data)
        abi = self.method_by_selector(data[:4])
        if abi is None:
            raise ValueError(f"Unknown selector {encode_hex(data[:4])} for {self.name}")
        input_types = _abi_types(abi["inputs"])
        values = decode(input_types, data[4:])
        return abi, [_normalize(t, v) for t, v in zip(input_types, values)]


class ContractArtifacts:
    """
    Index of compiled contract artifacts, looked up by contract name.
    """

    def __init__(self, artifacts: Dict[str, ContractArtifact]):
        self._artifacts = artifacts

    @classmethod
    def from_paths(cls, paths: Iterable[Path]) -> "ContractArtifacts":
        artifacts = dict()
        for path in paths:
            path = Path(path)
            if not path.exists():
                raise ValueError(f"Artifacts path {path} does not exist.")
            filepaths = [path] if path.is_file() else sorted(path.rglob("*.json"))
            for filepath in filepaths:
                if filepath.name.endswith(".dbg.json"):
                    continue
                try:
                    artifact = ContractArtifact.from_file(filepath)
                except ValueError:
                    continue  # not a contract artifact (e.g. build info)
                artifacts.setdefault(artifact.name, artifact)
        return cls(artifacts=artifacts)

    def __contains__(self, name: str) -> bool:
        return name in self._artifacts

    def __iter__(self):
        return iter(self._artifacts.values())

    @property
    def names(self) -> List[str]:
        return list(self._artifacts)

    def get(self, name: str) -> ContractArtifact:
        try:
            return self._artifacts[name]
        except KeyError:
            raise ValueError(f"No contract found with name '{name}'.")


class DeployedContract(NamedTuple):
    """A logical contract bound to an address; receipt is None for reused contracts."""

    name: str
    address: ChecksumAddress
    artifact: ContractArtifact
    receipt: Optional[Receipt] = None

    def __repr__(self) -> str:
        return f"<{self.name} {self.artifact.name}@{self.address}>"


class ContractSet:
    """
    Ordered logical name -> DeployedContract map. Once a name is bound
    its address cannot change for the rest of the run.
    """

    class AlreadyBound(Exception):
        """Raised when rebinding a logical name to a different address"""

    def __init__(self):
        self._contracts = OrderedDict()

    def bind(self, contract: DeployedContract) -> DeployedContract:
        existing = self._contracts.get(contract.name)
        if existing is not None:
            if not is_same_address(existing.address, contract.address):
                raise self.AlreadyBound(
                    f"{contract.name} is already bound to {existing.address}; "
                    f"cannot rebind to {contract.address}"
                )
            return existing
        self._contracts[contract.name] = contract
        return contract

    def __contains__(self, name: str) -> bool:
        return name in self._contracts

    def __getitem__(self, name: str) -> DeployedContract:
        return self._contracts[name]

    def __iter__(self):
        return iter(self._contracts.values())

    def __len__(self) -> int:
        return len(self._contracts)

    def get(self, name: str) -> Optional[DeployedContract]:
        return self._contracts.get(name)

    def addresses(self) -> Dict[str, ChecksumAddress]:
        return OrderedDict((name, c.address) for name, c in self._contracts.items())

    def deployments(self) -> List[DeployedContract]:
        """Contracts created during this run."""
        return [contract for contract in self if contract.receipt is not None]
