import json
from collections import OrderedDict, defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple

from eth_typing import ChecksumAddress
from eth_utils import encode_hex, to_checksum_address

from provisioning.utils import _load_json

ChainId = int
ContractName = str


STANDARD_REGISTRY_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


class RegistryEntry(NamedTuple):
    """Represents a single entry in a contract registry."""

    chain_id: ChainId
    name: ContractName
    address: ChecksumAddress
    abi: List[Dict]
    tx_hash: str
    block_number: int
    deployer: str


def registry_entries(deployments: Iterable, chain_id: ChainId, deployer: str) -> List[RegistryEntry]:
    """Returns registry entries for contracts deployed during a provisioning run."""
    entries = list()
    for contract in deployments:
        if contract.receipt is None:
            continue  # bound to a pre-existing address
        entry = RegistryEntry(
            chain_id=chain_id,
            name=contract.name,
            address=to_checksum_address(contract.address),
            abi=list(contract.artifact.abi),
            tx_hash=encode_hex(contract.receipt.tx_hash),
            block_number=contract.receipt.block_number,
            deployer=deployer,
        )
        entries.append(entry)
    return entries


def read_registry(filepath: Path) -> List[RegistryEntry]:
    with open(filepath, "r") as file:
        data = json.load(file)
    entries = list()
    for chain_id, contracts in data.items():
        for contract_name, artifacts in contracts.items():
            entry = RegistryEntry(
                chain_id=int(chain_id),
                name=contract_name,
                address=artifacts["address"],
                abi=artifacts["abi"],
                tx_hash=artifacts["tx_hash"],
                block_number=artifacts["block_number"],
                deployer=artifacts["deployer"],
            )
            entries.append(entry)
    return entries


def write_registry(entries: List[RegistryEntry], filepath: Path, silent: bool = False) -> Path:
    """Writes a contract registry to a file."""

    if not entries:
        print("No entries provided.")
        return filepath

    # Sort registry entries to enforce common order
    entries.sort(key=lambda entry: (str(entry.chain_id), entry.name))

    data = defaultdict(dict)
    for entry in entries:
        entry_abi = list(entry.abi)
        entry_abi.sort(key=lambda d: (d["type"], d.get("name", "")))

        data[str(entry.chain_id)][entry.name] = {
            "address": entry.address,
            "abi": entry_abi,
            "tx_hash": entry.tx_hash,
            "block_number": int(entry.block_number),
            "deployer": entry.deployer,
        }

    # Create the parent directory if it does not exist
    filepath.parent.mkdir(parents=True, exist_ok=True)

    # If the file already exists, attempt to merge the data, if not create a new file
    if filepath.exists():
        if not silent:
            print(f"Updating existing registry at {filepath}.")
        existing_data = _load_json(filepath)

        if any(chain_id in existing_data for chain_id in data):
            filepath = filepath.with_suffix(".unmerged.json")
            if not silent:
                print(
                    "Cannot merge registries with overlapping chain IDs.\n"
                    f"Writing to {filepath} to avoid overwriting existing data."
                )
        else:
            existing_data.update(data)
            data = existing_data
    elif not silent:
        print(f"Creating new registry at {filepath}.")

    with open(filepath, "w") as file:
        json.dump(data, file, **STANDARD_REGISTRY_JSON_FORMAT)

    return filepath


def addresses_from_registry(filepath: Path, chain_id: ChainId) -> Dict[ContractName, ChecksumAddress]:
    """Returns the logical name -> address map recorded in a registry for one chain."""
    if not Path(filepath).exists():
        raise ValueError(f"No registry found at {filepath}.")
    addresses = OrderedDict()
    for entry in read_registry(filepath=filepath):
        if entry.chain_id != chain_id:
            continue
        addresses[entry.name] = to_checksum_address(entry.address)
    if not addresses:
        raise ValueError(f"Registry {filepath} has no entries for chain_id {chain_id}.")
    return addresses
