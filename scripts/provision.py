#!/usr/bin/python3

from pathlib import Path

import click
from dotenv import load_dotenv

from provisioning.actors import ActorRegistry
from provisioning.artifacts import ContractArtifacts
from provisioning.chain import Web3ChainClient
from provisioning.constants import PLANS_DIR
from provisioning.options import (
    autosign_option,
    build_dirs_option,
    max_fee_option,
    max_priority_fee_option,
    mode_option,
    network_option,
    params_option,
    tags_option,
)
from provisioning.orchestrator import ProvisioningOrchestrator, StepFailure
from provisioning.params import ProvisioningPlan
from provisioning.utils import get_provider_api_key, is_local_network, validate_config


def _load_plan(filepath: Path, mode, chain_id: int, local: bool) -> ProvisioningPlan:
    try:
        plan = ProvisioningPlan.from_yaml(filepath, mode=mode)
        validate_config(plan.config, chain_id=chain_id, local=local)
    except ValueError as e:
        raise click.ClickException(f"{filepath}: {e}")
    return plan


@click.command()
@network_option
@params_option
@tags_option
@mode_option
@max_fee_option
@max_priority_fee_option
@build_dirs_option
@autosign_option
def cli(network, params_filepaths, tags, mode, max_fee, max_priority_fee, build_dirs, auto):
    """Provisions the ERC-3643 suite described by one or more plans."""
    load_dotenv(override=True)
    try:
        api_key = get_provider_api_key(network)
    except ValueError as e:
        raise click.ClickException(str(e))
    chain = Web3ChainClient.from_network(network, api_key=api_key)
    chain_id = chain.chain_id
    local = is_local_network(network)

    explicit = bool(params_filepaths)
    filepaths = [Path(p) for p in params_filepaths] or sorted(PLANS_DIR.glob("*.yml"))
    fee_overrides = {"max_fee": max_fee, "max_priority_fee": max_priority_fee}

    for filepath in filepaths:
        plan = _load_plan(filepath, mode=mode, chain_id=chain_id, local=local)
        if plan.paused and not explicit:
            click.echo(f"Skipping paused plan {plan.name}")
            continue
        if not plan.matches(tags):
            click.echo(f"Skipping plan {plan.name} (tags: {', '.join(plan.tags)})")
            continue

        try:
            artifacts = ContractArtifacts.from_paths(build_dirs or plan.build_paths)
            actors = ActorRegistry.from_environment(plan.actor_envvars)
            orchestrator = ProvisioningOrchestrator(
                plan=plan,
                chain=chain,
                artifacts=artifacts,
                actors=actors,
                autosign=auto,
                fee_overrides=fee_overrides,
            )
        except ValueError as e:
            raise click.ClickException(f"{plan.name}: {e}")

        try:
            result = orchestrator.run()
        except StepFailure as e:
            raise click.ClickException(f"{plan.name}: {e}")

        click.secho(f"\n{plan.name} provisioned on chain {chain_id}", fg="green")
        click.echo(f"Transactions: {len(result.transactions)}")
        click.echo(f"Claims issued: {len(result.claims)}")
        if result.registry_filepath:
            click.echo(f"Registry: {result.registry_filepath}")


if __name__ == "__main__":
    cli()
