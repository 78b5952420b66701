#!/usr/bin/python3

import click
from dotenv import load_dotenv
from web3 import Web3

from provisioning.actors import ActorRegistry
from provisioning.chain import Web3ChainClient
from provisioning.constants import DEFAULT_ACTOR_ENVVARS
from provisioning.options import network_option
from provisioning.params import ProvisioningPlan
from provisioning.utils import get_provider_api_key


@click.command(name="list-actors")
@network_option
@click.option(
    "--params",
    "-p",
    "params_filepath",
    help="Take the actor cast from this plan.",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)
def cli(network, params_filepath):
    """Lists actor addresses and their native balances."""
    load_dotenv(override=True)
    envvars = DEFAULT_ACTOR_ENVVARS
    if params_filepath:
        envvars = ProvisioningPlan.from_yaml(params_filepath).actor_envvars
    try:
        actors = ActorRegistry.from_environment(envvars)
        api_key = get_provider_api_key(network)
    except ValueError as e:
        raise click.ClickException(str(e))

    chain = Web3ChainClient.from_network(network, api_key=api_key)
    click.secho(f"\n{network} (chain {chain.chain_id})", fg="green")
    for actor in actors:
        if actor.ephemeral:
            click.secho(f"    {actor.name}: generated per run", fg="yellow")
            continue
        balance = Web3.from_wei(chain.get_balance(actor.address), "ether")
        click.secho(f"    {actor.name}: {actor.address} ({balance})", fg="cyan")


if __name__ == "__main__":
    cli()
