from typing import NamedTuple

from eth_abi import encode
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature, ValidationError
from eth_typing import ChecksumAddress
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from provisioning.actors import ActorRegistry
from provisioning.constants import ECDSA_CLAIM_SCHEME


class Claim(NamedTuple):
    """A signed attestation binding a topic and data payload to an identity."""

    topic: int
    scheme: int
    issuer: ChecksumAddress
    signature: HexBytes
    data: bytes
    identity: ChecksumAddress


def claim_topic(label: str) -> int:
    """Claim topic identifier for a human-readable label (keccak256 of its UTF-8 bytes)."""
    return int.from_bytes(keccak(text=label), "big")


def role_id(label: str) -> bytes:
    """32-byte access control role identifier (e.g. AGENT_ROLE)."""
    return keccak(text=label)


def key_hash(address: ChecksumAddress) -> bytes:
    """Identity key for an address: keccak256(abi.encode(address))."""
    return keccak(encode(["address"], [address]))


def claim_id(issuer: ChecksumAddress, topic: int) -> bytes:
    """Id under which an identity stores the claim of an issuer for a topic."""
    return keccak(encode(["address", "uint256"], [issuer, topic]))


def claim_digest(identity: ChecksumAddress, topic: int, data: bytes) -> bytes:
    """The hash a claim issuer signs: keccak256(abi.encode(identity, topic, data))."""
    return keccak(encode(["address", "uint256", "bytes"], [identity, topic, bytes(data)]))


def issue_claim(
    actors: ActorRegistry,
    signer: str,
    identity: ChecksumAddress,
    topic: int,
    data: bytes,
    issuer: ChecksumAddress,
    scheme: int = ECDSA_CLAIM_SCHEME,
) -> Claim:
    """Builds a claim for an identity and signs its digest with the signer's key."""
    digest = claim_digest(identity=identity, topic=topic, data=data)
    signature = actors.sign_digest(signer, digest)
    return Claim(
        topic=topic,
        scheme=scheme,
        issuer=to_checksum_address(issuer),
        signature=signature,
        data=bytes(data),
        identity=to_checksum_address(identity),
    )


def recover_claim_signer(claim: Claim) -> ChecksumAddress:
    digest = claim_digest(identity=claim.identity, topic=claim.topic, data=claim.data)
    signable_message = encode_defunct(primitive=digest)
    recovered = Account.recover_message(signable_message, signature=bytes(claim.signature))
    return to_checksum_address(recovered)


def verify_claim(claim: Claim, signer_address: ChecksumAddress) -> bool:
    """True if the claim was signed by the given address."""
    try:
        recovered = recover_claim_signer(claim)
    except (ValueError, BadSignature, ValidationError):
        return False  # malformed signature
    return recovered == to_checksum_address(signer_address)
