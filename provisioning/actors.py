import os
from collections import OrderedDict
from typing import Dict, List, Mapping, NamedTuple, Optional

from eth_account import Account
from eth_account.datastructures import SignedTransaction
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_keys.exceptions import ValidationError
from eth_typing import ChecksumAddress
from hexbytes import HexBytes


class Actor(NamedTuple):
    name: str
    account: LocalAccount
    ephemeral: bool = False

    @property
    def address(self) -> ChecksumAddress:
        return self.account.address


class ActorRegistry:
    """
    The fixed cast of provisioning actors and their keys. Constructed once
    per run and handed to every step; signs transactions and claim digests.
    """

    class MissingKey(ValueError):
        """Raised when an actor's private key is not configured"""

    class UnknownActor(KeyError):
        """Raised when looking up an actor that is not part of the cast"""

    def __init__(self, actors: Mapping[str, Actor]):
        self._actors = OrderedDict(actors)

    @classmethod
    def from_keys(cls, keys: Mapping[str, Optional[str]]) -> "ActorRegistry":
        """Builds the registry from private keys; a None key generates an ephemeral account."""
        actors = OrderedDict()
        for name, private_key in keys.items():
            if private_key is None:
                actors[name] = Actor(name=name, account=Account.create(), ephemeral=True)
                continue
            if not private_key.strip():
                raise cls.MissingKey(f"Private key for actor '{name}' is empty.")
            try:
                account = Account.from_key(private_key.strip())
            except (ValueError, TypeError, ValidationError) as e:
                raise cls.MissingKey(f"Invalid private key for actor '{name}': {e}") from e
            actors[name] = Actor(name=name, account=account)
        return cls(actors)

    @classmethod
    def from_environment(
        cls,
        envvars: Mapping[str, Optional[str]],
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ActorRegistry":
        """
        Loads one actor per (actor name -> environment variable) entry.
        Actors mapped to None get a fresh random key for this run only.
        """
        environ = os.environ if environ is None else environ
        keys = OrderedDict()
        for name, envvar in envvars.items():
            if envvar is None:
                keys[name] = None
                continue
            private_key = environ.get(envvar, "")
            if not private_key:
                raise cls.MissingKey(f"{envvar} is not set (private key for actor '{name}').")
            keys[name] = private_key
        return cls.from_keys(keys)

    def __contains__(self, name: str) -> bool:
        return name in self._actors

    def __iter__(self):
        return iter(self._actors.values())

    @property
    def names(self) -> List[str]:
        return list(self._actors)

    def get(self, name: str) -> Actor:
        try:
            return self._actors[name]
        except KeyError:
            raise self.UnknownActor(name)

    def address(self, name: str) -> ChecksumAddress:
        return self.get(name).address

    def addresses(self) -> Dict[str, ChecksumAddress]:
        return OrderedDict((name, actor.address) for name, actor in self._actors.items())

    def sign_transaction(self, name: str, transaction: Dict) -> SignedTransaction:
        return self.get(name).account.sign_transaction(transaction)

    def sign_digest(self, name: str, digest: bytes) -> HexBytes:
        """EIP-191 signature over a 32-byte digest."""
        signable_message = encode_defunct(primitive=bytes(digest))
        signed_message = self.get(name).account.sign_message(signable_message)
        return HexBytes(signed_message.signature)

    def print_actors(self) -> None:
        print("\n~~ Accounts ~~")
        for actor in self:
            suffix = " (ephemeral)" if actor.ephemeral else ""
            print(f"{actor.name}: {actor.address}{suffix}")
