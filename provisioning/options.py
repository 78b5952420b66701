import click

from provisioning.constants import PLANS_DIR, SUPPORTED_NETWORKS, Mode
from provisioning.types import GweiAmount

network_option = click.option(
    "--network",
    "-n",
    help="Target network",
    type=click.Choice(SUPPORTED_NETWORKS),
    default="amoy",
    show_default=True,
)

params_option = click.option(
    "--params",
    "-p",
    "params_filepaths",
    help=f"Provisioning plan YAML file(s); defaults to every plan in {PLANS_DIR}.",
    type=click.Path(exists=True, dir_okay=False),
    multiple=True,
)

tags_option = click.option(
    "--tags",
    "-t",
    help="Only run plans carrying at least one of these tags.",
    multiple=True,
)

mode_option = click.option(
    "--mode",
    "-m",
    help="Override the plan's provisioning mode.",
    type=click.Choice([mode.value for mode in Mode]),
    required=False,
)

max_fee_option = click.option(
    "--max-fee",
    help="Override the plan's max fee per gas (gwei).",
    type=GweiAmount(),
    required=False,
)

max_priority_fee_option = click.option(
    "--max-priority-fee",
    help="Override the plan's max priority fee per gas (gwei).",
    type=GweiAmount(),
    required=False,
)

autosign_option = click.option(
    "--auto/--no-auto",
    help="Sign and send every transaction without asking for confirmation.",
    default=False,
    show_default=True,
)

build_dirs_option = click.option(
    "--build-dir",
    "-b",
    "build_dirs",
    help="Compiled contract artifacts directory; overrides the plan's build sources.",
    type=click.Path(exists=True, file_okay=False),
    multiple=True,
)
