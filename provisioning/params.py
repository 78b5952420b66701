import typing
from abc import ABC, abstractmethod
from collections import OrderedDict, namedtuple
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from eth_abi import is_encodable
from eth_utils import collapse_if_tuple, is_address, to_checksum_address

from provisioning.artifacts import ContractArtifact, ContractArtifacts, ContractSet
from provisioning.chain import FeePolicy
from provisioning.claims import claim_topic, role_id
from provisioning.constants import (
    ARTIFACTS_DIR,
    CLAIM_ISSUER,
    CLAIM_ISSUER_CONTRACT,
    DEFAULT_ACTOR_ENVVARS,
    DEFAULT_CONSISTENCY_INTERVAL,
    DEFAULT_CONSISTENCY_TIMEOUT,
    DEFAULT_RECEIPT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
    DEPLOYER,
    ECDSA_CLAIM_SCHEME,
    IDENTITY_AUTHORITY,
    IDENTITY_INTERFACE,
    IDENTITY_PROXY,
    TOKEN,
    TOKEN_AGENT,
    Mode,
    identity_name,
)
from provisioning.confirm import ZERO_ADDRESS
from provisioning.registry import addresses_from_registry
from provisioning.utils import _load_yaml, get_artifact_filepath, validate_config

CONTRACT_CONSTRUCTOR_PARAMETER_KEY = "constructor"
CONTRACT_TYPE_KEY = "contract_type"
CONTRACT_INTERFACE_KEY = "interface"


class VariableContext:
    def __init__(
        self,
        contract_names: List[str],
        contract_name: Optional[str] = None,
        actor_names: Iterable[str] = (),
        constants: typing.Dict[str, Any] = None,
    ):
        self.contract_names = contract_names or list()
        self.contract_name = contract_name
        self.actor_names = list(actor_names)
        self.constants = constants or dict()


class ResolutionContext:
    """
    State a variable resolves against: the contracts bound so far in this
    run and the actor cast. Eager contexts substitute the zero address for
    anything not yet available (used for validation before the run).
    """

    def __init__(self, contracts: ContractSet, actors=None, eager: bool = False):
        self.contracts = contracts
        self.actors = actors
        self.eager = eager

    @classmethod
    def for_validation(cls) -> "ResolutionContext":
        return cls(contracts=ContractSet(), actors=None, eager=True)


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    class Unresolved(ValueError):
        """Raised when a variable refers to something that is not available yet"""

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        result = isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)
        return result


class ActorAddress(Variable):
    def __init__(self, actor_name: str):
        self.actor_name = actor_name

    def __str__(self) -> str:
        return self.actor_name

    @classmethod
    def is_actor(cls, value: str, context: VariableContext) -> bool:
        """Returns True if the variable names an actor (e.g. $deployer)."""
        return value == DEPLOYER or value in context.actor_names

    def resolve(self, context: ResolutionContext) -> Any:
        if context.actors is None or self.actor_name not in context.actors:
            if context.eager:
                return ZERO_ADDRESS
            raise self.Unresolved(f"Actor '{self.actor_name}' is not part of the cast")
        return context.actors.address(self.actor_name)


class Constant(Variable):
    def __init__(self, constant_name: str, context: VariableContext):
        try:
            self.constant_value = context.constants[constant_name]
        except KeyError:
            raise ValueError(f"Constant '{constant_name}' not found in provisioning plan.")
        self.constant_name = constant_name

    def __str__(self) -> str:
        return self.constant_name

    @classmethod
    def is_constant(cls, value: str) -> bool:
        """Returns True if the variable is a plan constant."""
        return value.isupper()

    def resolve(self, context: ResolutionContext) -> Any:
        return self.constant_value


class Keccak(Variable):
    """$keccak:LABEL -> 32-byte keccak256 of the label (role identifiers)."""

    KECCAK_PREFIX = "keccak:"

    def __init__(self, variable: str):
        self.label = variable[len(self.KECCAK_PREFIX):]
        if not self.label:
            raise ValueError("Empty label in keccak variable.")

    def __str__(self) -> str:
        return self.label

    @classmethod
    def is_keccak(cls, value: str) -> bool:
        return value.startswith(cls.KECCAK_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        return role_id(self.label)


class Topic(Variable):
    """$topic:LABEL -> uint256 claim topic derived from the label."""

    TOPIC_PREFIX = "topic:"

    def __init__(self, variable: str):
        self.label = variable[len(self.TOPIC_PREFIX):]
        if not self.label:
            raise ValueError("Empty label in topic variable.")

    def __str__(self) -> str:
        return self.label

    @classmethod
    def is_topic(cls, value: str) -> bool:
        return value.startswith(cls.TOPIC_PREFIX)

    def resolve(self, context: ResolutionContext) -> Any:
        return claim_topic(self.label)


class ContractName(Variable):
    def __init__(self, contract_name: str, context: VariableContext):
        if contract_name not in context.contract_names:
            raise ValueError(f"Contract name {contract_name} not found")
        self.contract_name = contract_name

    def __str__(self) -> str:
        return self.contract_name

    def resolve(self, context: ResolutionContext) -> Any:
        """Resolves a contract address; the contract must already be bound."""
        contract = context.contracts.get(self.contract_name)
        if contract is None:
            if context.eager:
                return ZERO_ADDRESS
            raise self.Unresolved(
                f"{self.contract_name} is referenced before it has been deployed or bound"
            )
        return contract.address


def _resolve_param(value: Any, context: ResolutionContext) -> Any:
    """Resolves a single parameter value or a list of parameter values."""
    if isinstance(value, list):
        return [_resolve_param(v, context) for v in value]

    if isinstance(value, Variable):
        return value.resolve(context)

    return value  # literally a value


def _resolve_params(parameters: OrderedDict, context: ResolutionContext) -> OrderedDict:
    resolved_parameters = OrderedDict()
    for name, value in parameters.items():
        resolved_parameters[name] = _resolve_param(value, context)

    return resolved_parameters


def _variable_from_value(variable: Any, context: VariableContext) -> Variable:
    variable = variable[len(Variable.VARIABLE_PREFIX):]
    if ActorAddress.is_actor(variable, context):
        return ActorAddress(variable)
    elif Keccak.is_keccak(variable):
        return Keccak(variable)
    elif Topic.is_topic(variable):
        return Topic(variable)
    elif Constant.is_constant(variable):
        return Constant(variable, context)
    else:
        return ContractName(variable, context)


def _process_raw_value(value: Any, variable_context: VariableContext) -> Any:
    if isinstance(value, list):
        return [_process_raw_value(v, variable_context) for v in value]

    if Variable.is_variable(value):
        value = _variable_from_value(value, variable_context)

    return value


def _process_raw_values(values: Dict, variable_context: VariableContext) -> OrderedDict:
    processed_parameters = OrderedDict()
    for name, value in values.items():
        processed_parameters[name] = _process_raw_value(value, variable_context)

    return processed_parameters


def _get_contract_names(config: typing.Dict) -> List[str]:
    contract_names = list()
    for contract_info in config["contracts"]:
        if isinstance(contract_info, str):
            contract_names.append(contract_info)
        elif isinstance(contract_info, dict):
            contract_names.extend(list(contract_info.keys()))
        else:
            raise ValueError("Malformed constructor parameters YAML.")

    return contract_names


def _validate_constructor_abi_inputs(
    contract_name: str,
    abi_inputs: List[Any],
    resolved_parameters: OrderedDict,
    artifact: ContractArtifact,
) -> None:
    """Validates the constructor parameters against the constructor ABI."""
    if len(resolved_parameters) != len(abi_inputs):
        raise ConstructorParameters.Invalid(
            f"Constructor parameters length mismatch - "
            f"{contract_name} ({artifact.name}) ABI requires {len(abi_inputs)}, "
            f"Got {len(resolved_parameters)}."
        )
    if not abi_inputs:
        return  # no constructor parameters

    codex = enumerate(zip(abi_inputs, resolved_parameters.items()), start=0)
    for position, (abi_input, resolved_input) in codex:
        name, value = resolved_input
        # validate name
        if abi_input["name"] != name:
            raise ConstructorParameters.Invalid(
                f"{contract_name} constructor parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input['name']}'."
            )

        # validate value type
        if not is_encodable(collapse_if_tuple(abi_input), value):
            raise ConstructorParameters.Invalid(
                f"Constructor param name '{name}' at position {position} has a value '{value}' "
                f"whose type does not match expected ABI type '{abi_input['type']}'"
            )


class ConstructorParameters:
    """Represents the constructor parameters for a set of contracts."""

    class Invalid(ValueError):
        """Raised when the constructor parameters are invalid"""

    def __init__(self, parameters: OrderedDict):
        self.parameters = parameters

    @classmethod
    def from_config(
        cls, config: typing.Dict, actor_names: Iterable[str] = ()
    ) -> "ConstructorParameters":
        """Loads the constructor parameters from a plan config."""
        print("Processing contract constructor parameters...")
        contracts_config = OrderedDict()
        contract_names = _get_contract_names(config)
        constants = config.get("constants")
        for contract_info in config["contracts"]:
            if isinstance(contract_info, str):
                contract_constructor_params = {contract_info: OrderedDict()}
            elif isinstance(contract_info, dict):
                if len(contract_info) != 1:
                    raise ValueError("Malformed constructor parameters YAML.")

                contract_name = list(contract_info.keys())[0]  # only one entry
                contract_data = contract_info[contract_name] or dict()
                if not isinstance(contract_data, dict):
                    raise ValueError(f"Malformed constructor parameter config for {contract_name}.")
                parameter_values = OrderedDict()
                if CONTRACT_CONSTRUCTOR_PARAMETER_KEY in contract_data:
                    parameter_values = _process_raw_values(
                        contract_data[CONTRACT_CONSTRUCTOR_PARAMETER_KEY] or dict(),
                        VariableContext(
                            contract_names=contract_names,
                            contract_name=contract_name,
                            actor_names=actor_names,
                            constants=constants,
                        ),
                    )
                contract_constructor_params = {contract_name: parameter_values}
            else:
                raise ValueError("Malformed constructor parameters YAML.")
            contracts_config.update(contract_constructor_params)

        return cls(parameters=contracts_config)

    def validate(self, artifacts: Dict[str, ContractArtifact]) -> None:
        """Validates the constructor parameters for all contracts against their artifacts."""
        context = ResolutionContext.for_validation()
        for contract, parameters in self.parameters.items():
            resolved_parameters = _resolve_params(parameters, context)
            artifact = artifacts[contract]
            _validate_constructor_abi_inputs(
                contract_name=contract,
                abi_inputs=artifact.constructor_inputs,
                resolved_parameters=resolved_parameters,
                artifact=artifact,
            )

    def resolve(self, contract_name: str, context: ResolutionContext) -> OrderedDict:
        """Resolves the constructor parameters for a single contract."""
        resolved_params = _resolve_params(self.parameters[contract_name], context)
        return resolved_params


class ContractSpec(NamedTuple):
    name: str  # logical name
    contract_type: str  # artifact deployed
    interface: str  # artifact used to interact with the deployed instance


class RoleGrantSpec(NamedTuple):
    contract: str
    role: str
    grantee: Variable
    sender: str


class CallSpec(NamedTuple):
    contract: str
    method: str
    args: List[Any]
    sender: str
    guard: Optional[str]


class IdentitySpec(NamedTuple):
    actor: str
    country: int
    action_key: Optional[str]
    claim: bool


class ClaimSettings(NamedTuple):
    topic: str
    data: bytes
    scheme: int
    issuer: str  # logical name of the ClaimIssuer contract
    issuer_owner: str  # actor managing the ClaimIssuer contract
    signer: str  # actor whose key signs claims
    all_identities: bool


class IdentityProxySettings(NamedTuple):
    contract_type: str
    interface: str
    authority: Variable


class MintSettings(NamedTuple):
    token: str
    sender: str
    recipients: "OrderedDict[str, int]"
    additional: "OrderedDict[str, int]"
    all_actors: bool

    def amounts(self) -> "OrderedDict[str, int]":
        amounts = OrderedDict(self.recipients)
        if self.all_actors:
            for actor, amount in self.additional.items():
                amounts[actor] = amounts.get(actor, 0) + amount
        return amounts


Flows = namedtuple("Flows", ["roles", "claims", "registration", "minting"])


class ProvisioningPlan:
    """
    A validated provisioning plan: contracts in dependency order with their
    constructor parameters, the actor cast, fee policy and the sub-flow
    configuration (roles, claims, identities, registration and minting).
    """

    class Invalid(ValueError):
        """Raised when the provisioning plan is malformed"""

    Unresolved = Variable.Unresolved

    def __init__(self, config: typing.Dict, path: Optional[Path] = None, mode: Optional[str] = None):
        validate_config(config=config)
        self.config = config
        self.path = path

        deployment = config["deployment"]
        self.name = deployment.get("name") or (path.stem if path else "provisioning")
        self.chain_id = int(deployment["chain_id"])
        self.tags = list(deployment.get("tags") or [])
        self.paused = bool(deployment.get("paused", False))
        try:
            self.mode = Mode(mode or deployment.get("mode", Mode.FRESH.value))
        except ValueError:
            raise self.Invalid(f"Unknown provisioning mode '{mode or deployment.get('mode')}'")

        self.constants = config.get("constants") or dict()

        self.actor_envvars = OrderedDict(config.get("actors") or DEFAULT_ACTOR_ENVVARS)
        actor_names = list(self.actor_envvars)

        self.contracts = self._get_contract_specs(config)
        self.contract_names = [spec.name for spec in self.contracts]
        self.constructor_parameters = ConstructorParameters.from_config(config, actor_names)

        self.fees = config.get("fees") or dict()
        consistency = config.get("consistency") or dict()
        self.consistency_timeout = consistency.get("timeout", DEFAULT_CONSISTENCY_TIMEOUT)
        self.consistency_interval = consistency.get("interval", DEFAULT_CONSISTENCY_INTERVAL)
        receipts = config.get("receipts") or dict()
        self.receipt_timeout = receipts.get("timeout", DEFAULT_RECEIPT_TIMEOUT)
        self.receipt_poll_interval = receipts.get("poll_interval", DEFAULT_RECEIPT_POLL_INTERVAL)

        variable_context = VariableContext(
            contract_names=self.contract_names,
            actor_names=actor_names,
            constants=self.constants,
        )
        self.roles = self._get_roles(config, variable_context)
        self.bindings = self._get_bindings(config, variable_context)
        self.identity_proxy = self._get_identity_proxy(config, variable_context)
        self.claims = self._get_claims(config)
        self.identities = self._get_identities(config, actor_names)
        self.registration_sender = (config.get("registration") or {}).get("sender", TOKEN_AGENT)
        self.minting = self._get_minting(config, actor_names)

        flows = config.get("flows") or dict()
        self.flows = Flows(**{field: bool(flows.get(field, True)) for field in Flows._fields})

        self.registry_filepath = get_artifact_filepath(config)
        self.build_paths = [Path(p) for p in (config.get("build") or {}).get("sources", [])]
        self._reuse = config.get("reuse") or dict()

    @classmethod
    def from_yaml(cls, filepath: Path, mode: Optional[str] = None) -> "ProvisioningPlan":
        filepath = Path(filepath)
        config = _load_yaml(filepath)
        if not isinstance(config, dict):
            raise cls.Invalid(f"Malformed provisioning plan {filepath}.")
        return cls(config=config, path=filepath, mode=mode)

    #
    # Parsing
    #

    @classmethod
    def _get_contract_specs(cls, config: typing.Dict) -> List[ContractSpec]:
        specs = list()
        for contract_info in config["contracts"]:
            if isinstance(contract_info, str):
                specs.append(ContractSpec(contract_info, contract_info, contract_info))
                continue
            name = list(contract_info.keys())[0]
            data = contract_info[name] or dict()
            contract_type = data.get(CONTRACT_TYPE_KEY, name)
            interface = data.get(CONTRACT_INTERFACE_KEY, contract_type)
            specs.append(ContractSpec(name, contract_type, interface))
        names = [spec.name for spec in specs]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise cls.Invalid(f"Duplicate contracts in plan: {', '.join(sorted(duplicates))}")
        return specs

    def _get_roles(self, config, variable_context) -> List[RoleGrantSpec]:
        roles = list()
        for entry in config.get("roles") or []:
            try:
                contract, role, grantee = entry["contract"], entry["role"], entry["grantee"]
            except (KeyError, TypeError):
                raise self.Invalid(f"Malformed role grant {entry}; expected contract, role, grantee.")
            self._check_contract(contract)
            if not Variable.is_variable(grantee):
                raise self.Invalid(f"Role grantee must be a variable, got '{grantee}'.")
            roles.append(
                RoleGrantSpec(
                    contract=contract,
                    role=role,
                    grantee=_process_raw_value(grantee, variable_context),
                    sender=entry.get("sender", DEPLOYER),
                )
            )
        return roles

    def _get_bindings(self, config, variable_context) -> List[CallSpec]:
        bindings = list()
        for entry in config.get("bindings") or []:
            try:
                contract, method = entry["contract"], entry["method"]
            except (KeyError, TypeError):
                raise self.Invalid(f"Malformed binding {entry}; expected contract and method.")
            self._check_contract(contract)
            bindings.append(
                CallSpec(
                    contract=contract,
                    method=method,
                    args=_process_raw_value(list(entry.get("args") or []), variable_context),
                    sender=entry.get("sender", DEPLOYER),
                    guard=entry.get("guard"),
                )
            )
        return bindings

    def _get_identity_proxy(self, config, variable_context) -> IdentityProxySettings:
        data = config.get("identity_proxy") or dict()
        authority = data.get("authority", f"${IDENTITY_AUTHORITY}")
        return IdentityProxySettings(
            contract_type=data.get(CONTRACT_TYPE_KEY, IDENTITY_PROXY),
            interface=data.get(CONTRACT_INTERFACE_KEY, IDENTITY_INTERFACE),
            authority=_process_raw_value(authority, variable_context),
        )

    def _get_claims(self, config) -> ClaimSettings:
        data = config.get("claims") or dict()
        claim_data = data.get("data", "")
        if isinstance(claim_data, str):
            claim_data = claim_data.encode("utf-8")
        return ClaimSettings(
            topic=data.get("topic", "CLAIM_TOPIC"),
            data=bytes(claim_data),
            scheme=int(data.get("scheme", ECDSA_CLAIM_SCHEME)),
            issuer=data.get("issuer", CLAIM_ISSUER_CONTRACT),
            issuer_owner=data.get("issuer_owner", CLAIM_ISSUER),
            signer=data.get("signer", "claim_signer"),
            all_identities=bool(data.get("all_identities", True)),
        )

    def _get_identities(self, config, actor_names) -> List[IdentitySpec]:
        identities = list()
        for entry in config.get("identities") or []:
            if not isinstance(entry, dict) or "actor" not in entry:
                raise self.Invalid(f"Malformed identity {entry}; expected at least an actor.")
            actor = entry["actor"]
            if actor not in actor_names:
                raise self.Invalid(f"Identity actor '{actor}' is not part of the cast.")
            action_key = entry.get("action_key")
            if action_key is not None and action_key not in actor_names:
                raise self.Invalid(f"Action key actor '{action_key}' is not part of the cast.")
            identities.append(
                IdentitySpec(
                    actor=actor,
                    country=int(entry.get("country", 0)),
                    action_key=action_key,
                    claim=bool(entry.get("claim", True)),
                )
            )
        return identities

    def _get_minting(self, config, actor_names) -> MintSettings:
        data = config.get("minting") or dict()
        recipients = OrderedDict(data.get("recipients") or {})
        additional = OrderedDict(data.get("additional") or {})
        for actor in list(recipients) + list(additional):
            if actor not in actor_names:
                raise self.Invalid(f"Mint recipient '{actor}' is not part of the cast.")
        return MintSettings(
            token=data.get("token", TOKEN),
            sender=data.get("sender", TOKEN_AGENT),
            recipients=OrderedDict((k, int(v)) for k, v in recipients.items()),
            additional=OrderedDict((k, int(v)) for k, v in additional.items()),
            all_actors=bool(data.get("all_actors", False)),
        )

    def _check_contract(self, contract: str) -> None:
        if contract not in self.contract_names:
            raise self.Invalid(f"Unknown contract '{contract}' in plan {self.name}.")

    #
    # Queries
    #

    def matches(self, tags: Iterable[str]) -> bool:
        """True if no tags are requested or the plan carries at least one of them."""
        tags = set(tags or [])
        return not tags or bool(tags & set(self.tags))

    def spec(self, name: str) -> ContractSpec:
        for spec in self.contracts:
            if spec.name == name:
                return spec
        raise self.Invalid(f"Unknown contract '{name}' in plan {self.name}.")

    def contract_type(self, name: str) -> str:
        return self.spec(name).contract_type

    def interface(self, name: str) -> str:
        return self.spec(name).interface

    def fee_policy(self, **overrides) -> FeePolicy:
        try:
            return FeePolicy.from_config(self.fees, **overrides)
        except ValueError as e:
            raise self.Invalid(f"Invalid fee policy in plan {self.name}: {e}") from e

    def identity_names(self) -> List[str]:
        return [identity_name(identity.actor) for identity in self.identities]

    def validate(self, artifacts: ContractArtifacts) -> None:
        """Checks every referenced artifact exists and the constructor parameters fit their ABI."""
        deployed = {spec.name: artifacts.get(spec.contract_type) for spec in self.contracts}
        for spec in self.contracts:
            artifacts.get(spec.interface)
        artifacts.get(self.identity_proxy.contract_type)
        artifacts.get(self.identity_proxy.interface)
        if self.mode == Mode.FRESH:
            self.constructor_parameters.validate(deployed)

    def reuse_addresses(self, chain_id: Optional[int] = None) -> "OrderedDict[str, str]":
        """
        The logical name -> address table for reuse mode, from an optional
        registry file plus inline addresses, validated before use.
        """
        addresses = OrderedDict()
        registry_filename = self._reuse.get("registry")
        if registry_filename:
            registry_filepath = Path(registry_filename)
            if not registry_filepath.is_absolute():
                registry_filepath = ARTIFACTS_DIR / registry_filepath
            addresses.update(
                addresses_from_registry(registry_filepath, chain_id=chain_id or self.chain_id)
            )
        addresses.update(self._reuse.get("addresses") or {})

        invalid = [name for name, address in addresses.items() if not is_address(str(address))]
        if invalid:
            raise self.Invalid(f"Invalid reuse addresses for: {', '.join(invalid)}")

        required = self.contract_names + self.identity_names()
        missing = [name for name in required if name not in addresses]
        if missing:
            raise self.Invalid(f"Missing reuse addresses for: {', '.join(missing)}")

        return OrderedDict((name, to_checksum_address(a)) for name, a in addresses.items())
