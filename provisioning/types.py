import click
from web3 import Web3


class GweiAmount(click.ParamType):
    """A fee amount given in gwei (e.g. '5' or '2.5'), converted to wei."""

    name = "gwei"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        try:
            wei = Web3.to_wei(str(value).strip(), "gwei")
        except (ValueError, TypeError, ArithmeticError):
            self.fail(f"{value} is not a valid gwei amount", param, ctx)
        if wei <= 0:
            self.fail(f"{value} must be a positive gwei amount", param, ctx)
        return wei
