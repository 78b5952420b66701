import json
import os
from pathlib import Path
from typing import Dict, Optional

import yaml

from provisioning.constants import (
    ARTIFACTS_DIR,
    LOCAL_NETWORKS,
    PROVIDER_API_KEY_ENVVAR,
)


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def get_artifact_filepath(config: Dict) -> Optional[Path]:
    """Returns the filepath of the registry artifact, if the plan publishes one."""
    artifact_config = config.get("artifacts")
    if not artifact_config:
        return None
    artifact_dir = Path(artifact_config.get("dir", ARTIFACTS_DIR))
    filename = artifact_config.get("filename")
    if not filename:
        raise ValueError("artifact filename is not set in params file.")
    return artifact_dir / filename


def validate_config(config: Dict, chain_id: Optional[int] = None, local: bool = True) -> None:
    """
    Checks that the plan is complete, that it targets the connected chain
    and that its registry has not already been published for that chain.
    """
    print("Validating parameters YAML...")

    deployment = config.get("deployment")
    if not deployment:
        raise ValueError("deployment is not set in params file.")

    config_chain_id = deployment.get("chain_id")
    if not config_chain_id:
        raise ValueError("chain_id is not set in params file.")

    contracts = config.get("contracts")
    if not contracts:
        raise ValueError("Constructor parameters file missing 'contracts' field.")

    if chain_id is None:
        return

    config_chain_id = int(config_chain_id)
    chain_mismatch = config_chain_id != chain_id
    if chain_mismatch and not local:
        raise ValueError(
            f"chain_id in params file ({config_chain_id}) does not match "
            f"chain_id of current network ({chain_id})."
        )


def check_registry_not_published(registry_filepath: Optional[Path], chain_id: int) -> None:
    if registry_filepath is None or not registry_filepath.exists():
        return
    registry_chain_ids = map(int, _load_json(registry_filepath).keys())
    if chain_id in registry_chain_ids:
        raise ValueError(f"Deployment is already published for chain_id {chain_id}.")


def is_local_network(network: str) -> bool:
    return network in LOCAL_NETWORKS


def get_provider_api_key(network: str) -> Optional[str]:
    """Returns the provider API key for live networks, failing early if it is not set."""
    if is_local_network(network):
        return None  # unnecessary for local provisioning
    api_key = os.environ.get(PROVIDER_API_KEY_ENVVAR)
    if not api_key:
        raise ValueError(f"{PROVIDER_API_KEY_ENVVAR} is not set.")
    return api_key

