import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional

from eth_typing import ChecksumAddress
from eth_utils import is_same_address

from provisioning.actors import ActorRegistry
from provisioning.artifacts import ContractArtifacts, ContractSet, DeployedContract
from provisioning.chain import ChainClient, ReadConsistency
from provisioning.claims import Claim, claim_id, claim_topic, issue_claim, key_hash, role_id
from provisioning.constants import (
    CLAIM_ISSUERS_REGISTRY,
    CLAIM_TOPICS_REGISTRY,
    DEPLOYER,
    ECDSA_KEY_TYPE,
    IDENTITY_REGISTRY,
    KeyPurpose,
    Mode,
    identity_name,
)
from provisioning.params import (
    CallSpec,
    ProvisioningPlan,
    ResolutionContext,
    RoleGrantSpec,
    _resolve_param,
)
from provisioning.registry import registry_entries, write_registry
from provisioning.transactor import Deployer, TransactionRecord
from provisioning.utils import check_registry_not_published


class StepFailure(Exception):
    """Raised when a provisioning step fails; the run stops and nothing is rolled back."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")


class RoleGrant(NamedTuple):
    """A role edge by logical names, e.g. (BasicCompliance, TOKEN_ROLE, Token)."""

    contract: str
    role: str
    grantee: str


class ProvisioningResult(NamedTuple):
    contracts: Dict[str, ChecksumAddress]
    identities: Dict[str, ChecksumAddress]
    claims: List[Claim]
    role_grants: List[RoleGrant]
    transactions: List[TransactionRecord]
    registry_filepath: Optional[Path]


class ProvisioningStrategy(ABC):
    """Produces the contract set and the per-actor identities."""

    def __init__(self, orchestrator: "ProvisioningOrchestrator"):
        self.orchestrator = orchestrator
        self.plan = orchestrator.plan
        self.artifacts = orchestrator.artifacts
        self.deployer = orchestrator.deployer
        self.contracts = orchestrator.contracts

    @abstractmethod
    def establish(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def identity(self, actor: str) -> DeployedContract:
        raise NotImplementedError


class FreshStrategy(ProvisioningStrategy):
    """Deploys every contract in dependency order."""

    def establish(self) -> None:
        print("\n~~ Suite ~~")
        for spec in self.plan.contracts:
            with self.orchestrator._step(f"deploy {spec.name}"):
                resolved_params = self.plan.constructor_parameters.resolve(
                    spec.name, self.orchestrator.context()
                )
                contract = self.deployer.deploy(
                    name=spec.name,
                    artifact=self.artifacts.get(spec.contract_type),
                    resolved_params=resolved_params,
                    interface=self.artifacts.get(spec.interface),
                )
                self.contracts.bind(contract)

    def identity(self, actor: str) -> DeployedContract:
        name = identity_name(actor)
        if name in self.contracts:
            return self.contracts[name]
        settings = self.plan.identity_proxy
        artifact = self.artifacts.get(settings.contract_type)
        authority = _resolve_param(settings.authority, self.orchestrator.context())
        input_names = [i["name"] for i in artifact.constructor_inputs]
        resolved_params = OrderedDict(
            zip(input_names, [authority, self.orchestrator.actors.address(actor)])
        )
        contract = self.deployer.deploy(
            name=name,
            artifact=artifact,
            resolved_params=resolved_params,
            interface=self.artifacts.get(settings.interface),
        )
        return self.contracts.bind(contract)


class ReuseStrategy(ProvisioningStrategy):
    """Binds every logical name to a known address; never creates a contract."""

    def __init__(self, orchestrator: "ProvisioningOrchestrator"):
        super().__init__(orchestrator)
        self.addresses = OrderedDict()

    def establish(self) -> None:
        print("\n~~ Suite (reused) ~~")
        with self.orchestrator._step("load reuse addresses"):
            self.addresses = self.plan.reuse_addresses(chain_id=self.orchestrator.chain_id)
        for spec in self.plan.contracts:
            with self.orchestrator._step(f"bind {spec.name}"):
                contract = self.deployer.at(
                    name=spec.name,
                    artifact=self.artifacts.get(spec.interface),
                    address=self.addresses[spec.name],
                )
                self.contracts.bind(contract)

    def identity(self, actor: str) -> DeployedContract:
        name = identity_name(actor)
        if name in self.contracts:
            return self.contracts[name]
        contract = self.deployer.at(
            name=name,
            artifact=self.artifacts.get(self.plan.identity_proxy.interface),
            address=self.addresses[name],
        )
        return self.contracts.bind(contract)


class ProvisioningOrchestrator:
    """
    Runs a provisioning plan against a chain: establishes the contract set
    (Fresh or Reuse), then grants roles, sets up the claim issuer, provisions
    identities and claims, registers identities and mints, in that order.
    Every step waits for its receipt before the next one starts; the first
    failure stops the run with a StepFailure.
    """

    def __init__(
        self,
        plan: ProvisioningPlan,
        chain: ChainClient,
        artifacts: ContractArtifacts,
        actors: ActorRegistry,
        autosign: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        fee_overrides: Optional[Dict] = None,
    ):
        self.plan = plan
        self.chain = chain
        self.artifacts = artifacts
        self.actors = actors
        self.contracts = ContractSet()
        self.deployer = Deployer(
            chain=chain,
            actors=actors,
            fee_policy=plan.fee_policy(**(fee_overrides or {})),
            autosign=autosign,
            receipt_timeout=plan.receipt_timeout,
            poll_interval=plan.receipt_poll_interval,
        )
        self.chain_id = self.deployer.chain_id
        self.consistency = ReadConsistency(
            timeout=plan.consistency_timeout,
            interval=plan.consistency_interval,
            sleep=sleep,
        )
        self.claims: List[Claim] = list()
        self.role_grants: List[RoleGrant] = list()
        self.identities: Dict[str, DeployedContract] = OrderedDict()
        if plan.mode == Mode.FRESH:
            self.strategy = FreshStrategy(self)
        else:
            self.strategy = ReuseStrategy(self)

    @contextmanager
    def _step(self, description: str):
        try:
            yield
        except StepFailure:
            raise
        except Exception as e:
            print(f"\n(!) {description} failed: {e}")
            raise StepFailure(description, e) from e

    def context(self) -> ResolutionContext:
        return ResolutionContext(contracts=self.contracts, actors=self.actors)

    def run(self) -> ProvisioningResult:
        print(f"\n~~ Provisioning {self.plan.name} ({self.plan.mode.value}) ~~")
        with self._step("validate plan"):
            self._validate()
        self.actors.print_actors()

        self.strategy.establish()
        if self.plan.flows.roles:
            self.grant_roles()
            self.apply_bindings()
        if self.plan.flows.claims:
            self.setup_claim_issuer()
        self.provision_identities()
        if self.plan.flows.registration:
            self.register_identities()
        if self.plan.flows.minting:
            self.mint()
        registry_filepath = self.publish()

        print("\n~~ Done ~~")
        for name, address in self.contracts.addresses().items():
            print(f"{name}: {address}")
        return ProvisioningResult(
            contracts=self.contracts.addresses(),
            identities=OrderedDict((a, c.address) for a, c in self.identities.items()),
            claims=list(self.claims),
            role_grants=list(self.role_grants),
            transactions=list(self.deployer.transactions),
            registry_filepath=registry_filepath,
        )

    def _validate(self) -> None:
        self.plan.validate(self.artifacts)
        if self.plan.mode == Mode.FRESH:
            check_registry_not_published(self.plan.registry_filepath, self.chain_id)

        # every actor the plan relies on must be part of the cast
        flows = self.plan.flows
        required = {DEPLOYER}
        required.update(identity.actor for identity in self.plan.identities)
        if flows.roles:
            required.update(spec.sender for spec in self.plan.roles + self.plan.bindings)
        if flows.claims:
            required.update({self.plan.claims.signer, self.plan.claims.issuer_owner})
            required.update(i.action_key for i in self.plan.identities if i.action_key)
        if flows.registration:
            required.add(self.plan.registration_sender)
        if flows.minting:
            required.add(self.plan.minting.sender)
            required.update(self.plan.minting.amounts())
        for name in sorted(required):
            self.actors.get(name)

    #
    # Roles & bindings
    #

    def grant_role(self, spec: RoleGrantSpec) -> RoleGrant:
        """Grants a role unless the grantee already holds it."""
        contract = self.contracts[spec.contract]
        grantee = _resolve_param(spec.grantee, self.context())
        role = role_id(spec.role)
        if self.deployer.call(contract, "hasRole", role, grantee):
            print(f"(i) {spec.grantee} already has {spec.role} on {spec.contract}")
        else:
            self.deployer.transact(contract, "grantRole", role, grantee, sender=spec.sender)
            self.consistency.wait_until(
                lambda: self.deployer.call(contract, "hasRole", role, grantee),
                description=f"{spec.role} on {spec.contract} for {spec.grantee}",
            )
        grant = RoleGrant(contract=spec.contract, role=spec.role, grantee=str(spec.grantee))
        if grant not in self.role_grants:
            self.role_grants.append(grant)
        return grant

    def grant_roles(self) -> None:
        print("\n~~ Roles ~~")
        for spec in self.plan.roles:
            with self._step(f"grant {spec.role} on {spec.contract} to {spec.grantee}"):
                self.grant_role(spec)

    def _already_applied(self, contract: DeployedContract, spec: CallSpec, args: List) -> bool:
        guard_abi = contract.artifact.methods(spec.guard)[0]
        guard_args = args if guard_abi.get("inputs") else []
        result = self.deployer.call(contract, spec.guard, *guard_args)
        if isinstance(result, (list, tuple)):
            return bool(args) and all(arg in result for arg in args)
        return bool(result)

    def apply_binding(self, spec: CallSpec) -> None:
        contract = self.contracts[spec.contract]
        args = _resolve_param(spec.args, self.context())
        guarded = spec.guard and contract.artifact.has_method(spec.guard)
        if guarded and self._already_applied(contract, spec, args):
            print(f"(i) {spec.contract}.{spec.method} already applied")
            return
        self.deployer.transact(contract, spec.method, *args, sender=spec.sender)
        if guarded:
            self.consistency.wait_until(
                lambda: self._already_applied(contract, spec, args),
                description=f"{spec.contract}.{spec.method}",
            )

    def apply_bindings(self) -> None:
        for spec in self.plan.bindings:
            with self._step(f"{spec.contract}.{spec.method}"):
                self.apply_binding(spec)

    #
    # Claim issuer
    #

    def add_key(
        self, identity: DeployedContract, key_actor: str, purpose: int, sender: str
    ) -> None:
        """Adds an actor's key to an identity contract unless it already has the purpose."""
        key = key_hash(self.actors.address(key_actor))
        if self.deployer.call(identity, "keyHasPurpose", key, purpose):
            print(f"(i) {key_actor} key already has purpose {purpose} on {identity.name}")
            return
        self.deployer.transact(identity, "addKey", key, purpose, ECDSA_KEY_TYPE, sender=sender)
        self.consistency.wait_until(
            lambda: self.deployer.call(identity, "keyHasPurpose", key, purpose),
            description=f"{key_actor} key on {identity.name}",
        )

    def setup_claim_issuer(self) -> None:
        print("\n~~ Claims setup ~~")
        settings = self.plan.claims
        topic = claim_topic(settings.topic)

        topics_registry = self.contracts[CLAIM_TOPICS_REGISTRY]
        with self._step(f"register claim topic {settings.topic}"):
            if topic in self.deployer.call(topics_registry, "getClaimTopics"):
                print(f"(i) Claim topic {settings.topic} already registered")
            else:
                self.deployer.transact(topics_registry, "addClaimTopic", topic)
                self.consistency.wait_until(
                    lambda: topic in self.deployer.call(topics_registry, "getClaimTopics"),
                    description=f"claim topic {settings.topic}",
                )

        issuer = self.contracts[settings.issuer]
        with self._step(f"add claim signing key to {settings.issuer}"):
            self.add_key(issuer, settings.signer, KeyPurpose.CLAIM, sender=settings.issuer_owner)

        issuers_registry = self.contracts[CLAIM_ISSUERS_REGISTRY]
        with self._step(f"trust {settings.issuer} for {settings.topic}"):
            trusted = issuers_registry.artifact.has_method("isClaimIssuer") and self.deployer.call(
                issuers_registry, "isClaimIssuer", issuer.address
            )
            if trusted:
                print(f"(i) {settings.issuer} is already a trusted issuer")
            else:
                self.deployer.transact(issuers_registry, "addClaimIssuer", issuer.address, [topic])

    #
    # Identities & claims
    #

    def has_claim(self, identity: DeployedContract, issuer: ChecksumAddress, topic: int) -> bool:
        """True if the identity holds the issuer's claim for the topic with the configured data."""
        expected_id = claim_id(issuer, topic)
        if expected_id not in self.deployer.call(identity, "getClaimIdsByTopic", topic):
            return False
        stored = self.deployer.call(identity, "getClaim", expected_id)
        return is_same_address(stored[2], issuer) and bytes(stored[4]) == self.plan.claims.data

    def add_claim(self, actor: str, identity: DeployedContract) -> Optional[Claim]:
        """
        Signs a claim for the identity with the claim signing key and attaches it,
        unless the identity already holds the same claim from the issuer.
        """
        settings = self.plan.claims
        issuer = self.contracts[settings.issuer]
        topic = claim_topic(settings.topic)
        if self.has_claim(identity, issuer.address, topic):
            print(f"(i) {identity.name} already has a {settings.topic} claim from {settings.issuer}")
            return None
        claim = issue_claim(
            actors=self.actors,
            signer=settings.signer,
            identity=identity.address,
            topic=topic,
            data=settings.data,
            issuer=issuer.address,
            scheme=settings.scheme,
        )
        self.deployer.transact(
            identity,
            "addClaim",
            claim.topic,
            claim.scheme,
            claim.issuer,
            bytes(claim.signature),
            claim.data,
            "",
            sender=actor,
        )
        self.consistency.wait_until(
            lambda: self.has_claim(identity, issuer.address, topic),
            description=f"{settings.topic} claim on {identity.name}",
        )
        self.claims.append(claim)
        return claim

    def provision_identities(self) -> None:
        print("\n~~ Identities ~~")
        settings = self.plan.claims
        for spec in self.plan.identities:
            with self._step(f"identity for {spec.actor}"):
                identity = self.strategy.identity(spec.actor)
                self.identities[spec.actor] = identity
            if not self.plan.flows.claims:
                continue
            if spec.action_key:
                with self._step(f"action key for {spec.actor}"):
                    self.add_key(identity, spec.action_key, KeyPurpose.ACTION, sender=spec.actor)
            if spec.claim and (settings.all_identities or spec.actor == DEPLOYER):
                with self._step(f"claim for {spec.actor}"):
                    self.add_claim(spec.actor, identity)

    #
    # Registration & minting
    #

    def register_identities(self) -> None:
        print("\nBatch register identities in the Identity Registry...")
        registry = self.contracts[IDENTITY_REGISTRY]
        with self._step("batch register identities"):
            wallets, identities, countries = list(), list(), list()
            for spec in self.plan.identities:
                wallet = self.actors.address(spec.actor)
                if self.deployer.call(registry, "contains", wallet):
                    print(f"(i) {spec.actor} is already registered")
                    continue
                wallets.append(wallet)
                identities.append(self.identities[spec.actor].address)
                countries.append(spec.country)
            if not wallets:
                return
            self.deployer.transact(
                registry,
                "batchRegisterIdentity",
                wallets,
                identities,
                countries,
                sender=self.plan.registration_sender,
            )
            self.consistency.wait_until(
                lambda: all(self.deployer.call(registry, "contains", w) for w in wallets),
                description="identity registration",
            )

    def mint(self) -> None:
        print("\n~~ Sending tokens to wallets ~~")
        settings = self.plan.minting
        token = self.contracts[settings.token]
        registry = self.contracts.get(IDENTITY_REGISTRY)
        for actor, amount in settings.amounts().items():
            with self._step(f"mint {amount} to {actor}"):
                wallet = self.actors.address(actor)
                if registry is not None and registry.artifact.has_method("isVerified"):
                    verified = self.deployer.call(registry, "isVerified", wallet)
                    print(f"(i) {actor} verified: {verified}")
                balance = self.deployer.call(token, "balanceOf", wallet)
                self.deployer.transact(token, "mint", wallet, amount, sender=settings.sender)
                self.consistency.wait_until(
                    lambda: self.deployer.call(token, "balanceOf", wallet) >= balance + amount,
                    description=f"{actor} balance",
                )

    def publish(self) -> Optional[Path]:
        """Writes the registry of contracts deployed by a Fresh run."""
        if self.plan.mode != Mode.FRESH or self.plan.registry_filepath is None:
            return None
        with self._step("publish registry"):
            entries = registry_entries(
                self.contracts.deployments(),
                chain_id=self.chain_id,
                deployer=self.actors.address(DEPLOYER),
            )
            filepath = write_registry(entries=entries, filepath=self.plan.registry_filepath)
            print(f"(i) Registry written to {filepath}!")
            return filepath
