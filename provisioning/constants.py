from enum import Enum
from pathlib import Path

import provisioning

#
# Filesystem
#

PROVISIONING_DIR = Path(provisioning.__file__).parent
CONSTRUCTOR_PARAMS_DIR = PROVISIONING_DIR / "constructor_params"
PLANS_DIR = CONSTRUCTOR_PARAMS_DIR / "trex"
ARTIFACTS_DIR = PROVISIONING_DIR / "artifacts"

#
# Networks
#

AMOY = "amoy"
LOCALHOST = "localhost"

SUPPORTED_NETWORKS = [AMOY, LOCALHOST]
LOCAL_NETWORKS = [LOCALHOST]

PROVIDER_URIS = {
    AMOY: "https://polygon-amoy.g.alchemy.com/v2/{api_key}",
    LOCALHOST: "http://127.0.0.1:8545",
}

#
# Environment
#

PROVIDER_API_KEY_ENVVAR = "ALCHEMY_API_KEY"

DEPLOYER = "deployer"
CLAIM_ISSUER = "claim_issuer"
TOKEN_ISSUER = "token_issuer"
TOKEN_AGENT = "token_agent"
TOKEN_ADMIN = "token_admin"

# actor -> private key environment variable (None means an ephemeral key per run)
DEFAULT_ACTOR_ENVVARS = {
    DEPLOYER: "DEPLOYER_PRIVATE_KEY",
    CLAIM_ISSUER: "CLAIM_ISSUER_PRIVATE_KEY",
    TOKEN_ISSUER: "ISSUER_AGENT_ADMIN_PRIVATE_KEY",
    TOKEN_AGENT: "ISSUER_AGENT_ADMIN_PRIVATE_KEY",
    TOKEN_ADMIN: "ISSUER_AGENT_ADMIN_PRIVATE_KEY",
    "adam": "ADAM_PRIVATE_KEY",
    "bob": "BOB_PRIVATE_KEY",
    "charlie": "CHARLIE_PRIVATE_KEY",
}

#
# Transactions
#

EIP1559_TRANSACTION_TYPE = 2
DEFAULT_MAX_PRIORITY_FEE = "5 gwei"
DEFAULT_MAX_FEE = "20 gwei"
DEFAULT_GAS_LIMIT = 5_000_000

DEFAULT_RECEIPT_TIMEOUT = 120  # seconds
DEFAULT_RECEIPT_POLL_INTERVAL = 1
DEFAULT_CONSISTENCY_TIMEOUT = 60
DEFAULT_CONSISTENCY_INTERVAL = 2

#
# Contracts
#

IDENTITY_INTERFACE = "Identity"
IDENTITY_PROXY = "IdentityProxy"
CLAIM_TOPICS_REGISTRY = "ClaimTopicsRegistry"
CLAIM_ISSUERS_REGISTRY = "ClaimIssuersRegistry"
IDENTITY_REGISTRY = "IdentityRegistry"
TOKEN = "Token"
IDENTITY_AUTHORITY = "IdentityImplementationAuthority"  # logical name
CLAIM_ISSUER_CONTRACT = "ClaimIssuer"


class KeyPurpose:
    MANAGEMENT = 1
    ACTION = 2
    CLAIM = 3


ECDSA_KEY_TYPE = 1
ECDSA_CLAIM_SCHEME = 1


class Mode(Enum):
    FRESH = "fresh"
    REUSE = "reuse"


def identity_name(actor: str) -> str:
    """Logical registry name of an actor's identity contract (e.g. adam -> AdamIdentity)."""
    return "".join(part.title() for part in actor.split("_")) + "Identity"
