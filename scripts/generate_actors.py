#!/usr/bin/python3

from collections import OrderedDict

import click
from dotenv import dotenv_values, set_key
from eth_account import Account
from eth_utils import encode_hex

from provisioning.constants import DEFAULT_ACTOR_ENVVARS
from provisioning.params import ProvisioningPlan


@click.command()
@click.option(
    "--params",
    "-p",
    "params_filepath",
    help="Take the actor environment variables from this plan.",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)
@click.option(
    "--env-file",
    "-e",
    help="Write the generated keys into this .env file (keys already set are kept).",
    type=click.Path(dir_okay=False),
    required=False,
)
def cli(params_filepath, env_file):
    """Generates a fresh private key for every actor environment variable."""
    if params_filepath:
        envvars = ProvisioningPlan.from_yaml(params_filepath).actor_envvars
    else:
        envvars = DEFAULT_ACTOR_ENVVARS

    # actors may share a key (issuer, agent and admin)
    accounts = OrderedDict()
    for envvar in envvars.values():
        if envvar is None or envvar in accounts:
            continue
        accounts[envvar] = Account.create()

    existing = dotenv_values(env_file) if env_file else dict()
    for envvar, account in accounts.items():
        if existing.get(envvar):
            click.echo(f"{envvar} already set in {env_file}; skipping")
            continue
        private_key = encode_hex(account.key)
        if env_file:
            set_key(env_file, envvar, private_key)
            click.echo(f"{envvar} -> {account.address}")
        else:
            click.echo(f"{envvar}={private_key}  # {account.address}")


if __name__ == "__main__":
    cli()
