import sys
from collections import OrderedDict

from eth_utils import is_same_address

ZERO_ADDRESS = "0x" + "0" * 40


def _abort() -> None:
    print("Aborting provisioning!")
    sys.exit(-1)


def _confirm_deployment(contract_name: str) -> None:
    """Asks the user to confirm the deployment of a single contract."""
    answer = input(f"Deploy {contract_name} Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _continue() -> None:
    """Asks the user to continue."""
    answer = input("Continue Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _confirm_zero_address() -> None:
    answer = input("Zero Address detected for deployment parameter; Continue? Y/N? ")
    if answer.lower().strip() == "n":
        _abort()


def _is_zero_address(value) -> bool:
    return isinstance(value, str) and value.startswith("0x") and len(value) == 42 and \
        is_same_address(value, ZERO_ADDRESS)


def _confirm_resolution(resolved_params: OrderedDict, contract_name: str) -> None:
    """Asks the user to confirm the resolved constructor parameters for a single contract."""
    if len(resolved_params) == 0:
        print(f"\n(i) No constructor parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    print(f"\nConstructor parameters for {contract_name}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = _is_zero_address(resolved_value)
    _confirm_deployment(contract_name)
    if contains_zero_address:
        _confirm_zero_address()
