"""
Charter Template
================
Assembles a council-governed organization in two calls.

  prepare_instance:  organization + custody agent + token wrapper over an
                     external asset + vote-power aggregator seeded with the
                     wrapper. Cached per calling principal.
  finalize_instance: finance, council token + issuance manager, council
                     voting, community voting, council token holdings, the
                     full permission graph, optional name. Consumes the cache.

Each call is one atomic unit on the substrate: if anything fails, none of
that call's effects survive. Components from a successful prepare whose
finalize later fails stay deployed but unreferenced; they are recorded in
`orphans` and never reused.

Also provided:
  - create_instance: prepare + finalize as a single atomic unit
  - new_token / new_instance: legacy single-phase organization with one
    voting app over the wrapped asset
"""

from __future__ import annotations

import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import structlog

from charter_acl import ACL, AppHandle, ComponentKind, Role
from charter_apps import ONE_DAY, PowerSourceType
from charter_cache import CachedInstance, CachedToken, InstanceCache
from charter_errors import (
    BadExternalAssetError, BadMultisigOrAuthorityError, InvalidIdError,
    InvalidVotingSettingsError, MissingCacheError, MissingCouncilMembersError, NameTakenError,
)
from charter_permissions import (
    CouncilApps, SinglePhaseApps, apply_ops, audit, build_permission_graph,
    council_role_specs, single_phase_role_specs,
)
from charter_substrate import ComponentInstaller, NameRegistrar, Receipt, Substrate

log = structlog.get_logger()

# ==========================================
# CONFIGURATION
# ==========================================

DEFAULT_FINANCE_PERIOD = 30 * ONE_DAY
COUNCIL_MAX_ACCOUNT_TOKENS = 1
COUNCIL_TOKEN_NAME = "Council Token"
COUNCIL_TOKEN_SYMBOL = "CNCL"
AGGREGATOR_DECIMALS = 18

CACHE_TTL_SECONDS = float(os.environ.get("CHARTER_CACHE_TTL_SECONDS", "0"))  # 0 = no expiry
REGISTRAR_DOMAIN = os.environ.get("CHARTER_REGISTRAR_DOMAIN", "aragonid.eth")

_ID_RE = re.compile(r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?")  # whole string, via fullmatch


# ==========================================
# SETTINGS & RESULTS
# ==========================================

@dataclass(frozen=True)
class VotingSettings:
    support_required: int      # fixed point, 10**18 = 100%
    min_accept_quorum: int     # fixed point
    duration: int              # seconds

    @classmethod
    def from_sequence(cls, values: Sequence[int]) -> "VotingSettings":
        """[support, quorum, duration]; missing trailing values read as zero."""
        values = list(values or [])
        if len(values) > 3:
            raise InvalidVotingSettingsError()
        values += [0] * (3 - len(values))
        if any(int(v) < 0 for v in values):
            raise InvalidVotingSettingsError()
        return cls(*(int(v) for v in values))


@dataclass
class PrepareResult:
    dao: AppHandle
    cached: CachedInstance
    receipt: Receipt


@dataclass
class FinalizeResult:
    dao: AppHandle
    apps: CouncilApps
    council_token: AppHandle
    name: Optional[str]
    receipt: Receipt
    audit: Dict = field(default_factory=dict)


@dataclass
class TokenResult:
    token: AppHandle
    receipt: Receipt


@dataclass
class SinglePhaseResult:
    dao: AppHandle
    apps: SinglePhaseApps
    authority: str
    token: AppHandle
    name: str
    receipt: Receipt
    audit: Dict = field(default_factory=dict)


# ==========================================
# FINALIZE PIPELINE STAGES
# ==========================================
# Each install step takes the stage produced by the step before it, so the
# order (a manager is installed before anything references it) is visible
# in the signatures.

@dataclass(frozen=True)
class WithFinance:
    prepared: CachedInstance
    finance: AppHandle


@dataclass(frozen=True)
class WithCouncilToken:
    previous: WithFinance
    council_token: AppHandle
    council_token_manager: AppHandle


@dataclass(frozen=True)
class WithCouncilVoting:
    previous: WithCouncilToken
    council_voting: AppHandle


@dataclass(frozen=True)
class WithCommunityVoting:
    previous: WithCouncilVoting
    community_voting: AppHandle

    @property
    def council_token(self) -> AppHandle:
        return self.previous.previous.council_token

    def apps(self) -> CouncilApps:
        council_stage = self.previous
        token_stage = council_stage.previous
        finance_stage = token_stage.previous
        prepared = finance_stage.prepared
        return CouncilApps(
            dao=prepared.dao,
            acl=prepared.acl,
            script_registry=prepared.script_registry,
            agent=prepared.agent,
            finance=finance_stage.finance,
            token_wrapper=prepared.token_wrapper,
            voting_aggregator=prepared.voting_aggregator,
            council_token_manager=token_stage.council_token_manager,
            council_voting=council_stage.council_voting,
            community_voting=self.community_voting,
        )


# ==========================================
# THE TEMPLATE
# ==========================================

class OrganizationTemplate:
    """
    Two-phase organization template.

    Every public operation takes the calling `principal` explicitly. Pending
    state is keyed by it; one principal's prepare never touches another's.
    """

    def __init__(
        self,
        substrate: Optional[Substrate] = None,
        registrar: Optional[NameRegistrar] = None,
        cache_ttl_seconds: float = CACHE_TTL_SECONDS,
        clock=time.monotonic,
    ):
        self.substrate = substrate or Substrate()
        self.installer = ComponentInstaller(self.substrate)
        self.registrar = registrar or NameRegistrar(self.substrate, REGISTRAR_DOMAIN)
        self.address = self.substrate.deploy_account()
        self.instance_cache: InstanceCache[CachedInstance] = InstanceCache(
            cache_ttl_seconds, clock, name="instance")
        self.token_cache: InstanceCache[CachedToken] = InstanceCache(
            cache_ttl_seconds, clock, name="token")
        self.orphans: List[Dict] = []

    # ------ read-back ------

    def resolve(self, address: str):
        return self.substrate.get(address)

    def acl_for(self, dao_address: str) -> ACL:
        return self.substrate.acl_of(AppHandle(ComponentKind.KERNEL, dao_address))

    def pending(self, principal: str) -> Optional[CachedInstance]:
        return self.instance_cache.peek(principal)

    # ------ two-phase flow ------

    def prepare_instance(
        self,
        principal: str,
        external_asset: str,
        wrap_token_name: str,
        wrap_token_symbol: str,
        aggregate_token_name: str,
        aggregate_token_symbol: str,
    ) -> PrepareResult:
        self._purge_expired()
        with self.substrate.atomic() as receipt:
            cached = self._prepare(external_asset, wrap_token_name, wrap_token_symbol,
                                   aggregate_token_name, aggregate_token_symbol)

        replaced = self.instance_cache.put(principal, cached)
        if replaced is not None:
            self._orphan(principal, replaced, "superseded")
        log.info("instance_prepared", principal=principal, dao=cached.dao.address)
        return PrepareResult(cached.dao, cached, receipt)

    def finalize_instance(
        self,
        principal: str,
        id: str,
        community_voting_settings: Sequence[int],
        council_members: Sequence[str],
        council_voting_settings: Sequence[int],
        finance_period: Optional[int] = None,
    ) -> FinalizeResult:
        self._check_council(council_members)
        self._purge_expired()
        if not self.instance_cache.has(principal):
            raise MissingCacheError()
        community, council, members = self._validate_finalize(
            id, community_voting_settings, council_members, council_voting_settings)

        cached = self.instance_cache.take(principal)
        try:
            with self.substrate.atomic() as receipt:
                result = self._finalize(cached, id, community, members, council, finance_period)
        except Exception as e:
            log.warning("finalize_aborted", principal=principal, dao=cached.dao.address,
                        reason=str(e))
            self._orphan(principal, cached, "finalize_failed")
            raise

        result.receipt = receipt
        log.info("instance_finalized", principal=principal, dao=result.dao.address,
                 name=result.name, council_members=len(members))
        return result

    def create_instance(
        self,
        principal: str,
        external_asset: str,
        wrap_token_name: str,
        wrap_token_symbol: str,
        aggregate_token_name: str,
        aggregate_token_symbol: str,
        id: str,
        community_voting_settings: Sequence[int],
        council_members: Sequence[str],
        council_voting_settings: Sequence[int],
        finance_period: Optional[int] = None,
    ) -> FinalizeResult:
        """Both phases in one atomic unit. Never touches the principal's cache."""
        self._check_council(council_members)
        community, council, members = self._validate_finalize(
            id, community_voting_settings, council_members, council_voting_settings)

        with self.substrate.atomic() as receipt:
            cached = self._prepare(external_asset, wrap_token_name, wrap_token_symbol,
                                   aggregate_token_name, aggregate_token_symbol)
            result = self._finalize(cached, id, community, members, council, finance_period)

        result.receipt = receipt
        log.info("instance_created", principal=principal, dao=result.dao.address, name=result.name)
        return result

    # ------ legacy single-phase flow ------

    def new_token(self, principal: str, name: str, symbol: str) -> TokenResult:
        """Deploy the organization token for a later `new_instance` by the same principal."""
        self._purge_expired()
        with self.substrate.atomic() as receipt:
            token = self.installer.new_token(name, symbol, controller=self.address)
            self.substrate.emit("TokenCreated", token=token.address)

        replaced = self.token_cache.put(principal, CachedToken(token, name, symbol))
        if replaced is not None:
            self._orphan(principal, replaced, "superseded")
        return TokenResult(token, receipt)

    def new_instance(
        self,
        principal: str,
        id: str,
        external_asset: str,
        voting_settings: Sequence[int],
        authority: Optional[str] = None,
    ) -> SinglePhaseResult:
        self._purge_expired()
        if not self.token_cache.has(principal):
            raise MissingCacheError()
        if not id:
            raise InvalidIdError()
        self._validate_id(id)
        settings = VotingSettings.from_sequence(voting_settings)
        if authority is not None:
            self._ensure_authority(authority)
        self._ensure_asset(external_asset)

        cached = self.token_cache.take(principal)
        try:
            with self.substrate.atomic() as receipt:
                result = self._single_phase(cached, id, external_asset, settings, authority)
        except Exception as e:
            log.warning("new_instance_aborted", principal=principal, reason=str(e))
            self._orphan(principal, cached, "new_instance_failed")
            raise

        result.receipt = receipt
        log.info("instance_created", principal=principal, dao=result.dao.address, name=id)
        return result

    # ==========================================
    # VALIDATION
    # ==========================================

    def _validate_id(self, id: str):
        if not _ID_RE.fullmatch(id):
            raise InvalidIdError()
        if not self.registrar.is_available(id):
            raise NameTakenError()

    def _check_council(self, council_members):
        if not council_members or any(not m for m in council_members):
            raise MissingCouncilMembersError()

    def _validate_finalize(self, id, community_settings, council_members, council_settings):
        if id:
            self._validate_id(id)
        return (
            VotingSettings.from_sequence(community_settings),
            VotingSettings.from_sequence(council_settings),
            list(council_members),
        )

    def _ensure_asset(self, address: str):
        """The asset must answer a balance query with an integer."""
        asset = self.substrate.get(address)
        balance_of = getattr(asset, "balance_of", None)
        if not callable(balance_of):
            raise BadExternalAssetError()
        try:
            balance = balance_of(self.address)
        except Exception:
            raise BadExternalAssetError()
        if not isinstance(balance, int):
            raise BadExternalAssetError()

    def _ensure_authority(self, address: str):
        entity = self.substrate.get(address)
        if entity is None or not getattr(entity, "is_forwarder", False):
            raise BadMultisigOrAuthorityError()

    # ==========================================
    # PREPARE
    # ==========================================

    def _prepare(self, external_asset, wrap_name, wrap_symbol, agg_name, agg_symbol) -> CachedInstance:
        self._ensure_asset(external_asset)
        s = self.substrate
        dao, acl_handle, registry = self._new_dao()
        acl = s.get(acl_handle.address)

        agent = self.installer.install(dao, ComponentKind.AGENT, self.address, default_vault=True)
        wrapper = self.installer.install(
            dao, ComponentKind.TOKEN_WRAPPER, self.address,
            deposited_token=s.get(external_asset), name=wrap_name, symbol=wrap_symbol,
        )
        aggregator = self.installer.install(
            dao, ComponentKind.VOTING_AGGREGATOR, self.address,
            name=agg_name, symbol=agg_symbol, decimals=AGGREGATOR_DECIMALS,
        )
        with self._temporary_role(acl, aggregator, Role.ADD_POWER_SOURCE):
            s.resolve(aggregator).add_power_source(
                acl, self.address, s.resolve(wrapper),
                PowerSourceType.ERC20_WITH_CHECKPOINTING, 1,
            )

        return CachedInstance(
            dao=dao,
            acl=acl_handle,
            script_registry=registry,
            agent=agent,
            token_wrapper=wrapper,
            voting_aggregator=aggregator,
            external_asset=external_asset,
            settings={
                "wrap_token": (wrap_name, wrap_symbol),
                "aggregate_token": (agg_name, agg_symbol),
            },
        )

    def _new_dao(self):
        dao = self.installer.new_dao(root=self.address)
        kernel = self.substrate.resolve(dao)
        self.substrate.emit("DeployDao", dao=dao.address)
        return (
            dao,
            AppHandle(ComponentKind.ACL, kernel.acl),
            AppHandle(ComponentKind.EVM_SCRIPT_REGISTRY, kernel.script_registry),
        )

    # ==========================================
    # FINALIZE
    # ==========================================

    def _finalize(self, cached: CachedInstance, id: str, community: VotingSettings,
                  members: List[str], council: VotingSettings,
                  finance_period: Optional[int]) -> FinalizeResult:
        stage = self._install_finance(cached, finance_period)
        stage = self._install_council_token(stage)
        stage = self._install_council_voting(stage, council)
        stage = self._install_community_voting(stage, community)
        apps = stage.apps()

        self._mint_council_tokens(stage, members)
        summary = self._wire_council_permissions(apps)
        if id:
            self.registrar.register(id, apps.dao.address)
        self.substrate.emit("SetupDao", dao=apps.dao.address)
        return FinalizeResult(apps.dao, apps, stage.council_token, id or None, Receipt(), summary)

    def _install_finance(self, prepared: CachedInstance, period: Optional[int]) -> WithFinance:
        finance = self.installer.install(
            prepared.dao, ComponentKind.FINANCE, self.address,
            vault=prepared.agent.address, period_duration=period or DEFAULT_FINANCE_PERIOD,
        )
        return WithFinance(prepared, finance)

    def _install_council_token(self, stage: WithFinance) -> WithCouncilToken:
        token = self.installer.new_token(COUNCIL_TOKEN_NAME, COUNCIL_TOKEN_SYMBOL,
                                         controller=self.address, decimals=0, transferable=False)
        self.substrate.emit("DeployToken", token=token.address)
        token_obj = self.substrate.resolve(token)
        manager = self.installer.install(
            stage.prepared.dao, ComponentKind.TOKEN_MANAGER, self.address,
            on_deploy=lambda app: token_obj.change_controller(self.address, app.address),
            token=token_obj, transferable=False, max_account_tokens=COUNCIL_MAX_ACCOUNT_TOKENS,
        )
        return WithCouncilToken(stage, token, manager)

    def _install_council_voting(self, stage: WithCouncilToken,
                                settings: VotingSettings) -> WithCouncilVoting:
        voting = self._install_voting(stage.previous.prepared.dao, stage.council_token, settings)
        return WithCouncilVoting(stage, voting)

    def _install_community_voting(self, stage: WithCouncilVoting,
                                  settings: VotingSettings) -> WithCommunityVoting:
        prepared = stage.previous.previous.prepared
        voting = self._install_voting(prepared.dao, prepared.voting_aggregator, settings)
        return WithCommunityVoting(stage, voting)

    def _install_voting(self, dao: AppHandle, token: AppHandle, settings: VotingSettings) -> AppHandle:
        return self.installer.install(
            dao, ComponentKind.VOTING, self.address,
            token=token.address,
            support_required_pct=settings.support_required,
            min_accept_quorum_pct=settings.min_accept_quorum,
            vote_time=settings.duration,
        )

    def _mint_council_tokens(self, stage: WithCommunityVoting, members: List[str]):
        s = self.substrate
        apps = stage.apps()
        acl = s.get(apps.acl.address)
        manager = s.resolve(apps.council_token_manager)
        token = s.resolve(stage.council_token)
        with self._temporary_role(acl, apps.council_token_manager, Role.MINT):
            for member in members:
                manager.mint(acl, self.address, token, member, 1)

    def _wire_council_permissions(self, apps: CouncilApps) -> Dict:
        authority = apps.council_voting.address
        acl = self.substrate.get(apps.acl.address)
        ops = build_permission_graph(apps.dao, apps.acl, council_role_specs(apps),
                                     authority=authority, template=self.address)
        apply_ops(acl, ops, sender=self.address)
        resources = [apps.dao, apps.acl, apps.script_registry] + apps.installed()
        return audit(acl, resources, authority=authority, template=self.address)

    # ==========================================
    # SINGLE PHASE
    # ==========================================

    def _single_phase(self, cached: CachedToken, id: str, external_asset: str,
                      settings: VotingSettings, authority: Optional[str]) -> SinglePhaseResult:
        s = self.substrate
        dao, acl_handle, registry = self._new_dao()
        acl = s.get(acl_handle.address)

        agent = self.installer.install(dao, ComponentKind.AGENT, self.address, default_vault=True)
        finance = self.installer.install(
            dao, ComponentKind.FINANCE, self.address,
            vault=agent.address, period_duration=DEFAULT_FINANCE_PERIOD,
        )
        token_obj = s.resolve(cached.token)
        wrapper = self.installer.install(
            dao, ComponentKind.TOKEN_WRAPPER, self.address,
            on_deploy=lambda app: token_obj.change_controller(self.address, app.address),
            deposited_token=s.get(external_asset), name=cached.name, symbol=cached.symbol,
            org_token=token_obj,
        )
        voting = self._install_voting(dao, cached.token, settings)

        apps = SinglePhaseApps(dao, acl_handle, registry, agent, finance, wrapper, voting)
        top = authority or voting.address
        ops = build_permission_graph(dao, acl_handle, single_phase_role_specs(apps, top),
                                     authority=top, template=self.address)
        apply_ops(acl, ops, sender=self.address)
        summary = audit(acl, [dao, acl_handle, registry] + apps.installed(),
                        authority=top, template=self.address)

        self.registrar.register(id, dao.address)
        s.emit("SetupDao", dao=dao.address)
        return SinglePhaseResult(dao, apps, top, cached.token, id, Receipt(), summary)

    # ==========================================
    # HELPERS
    # ==========================================

    @contextmanager
    def _temporary_role(self, acl: ACL, app: AppHandle, role: Role):
        """Hold `role` on `app` for the body only. Failure rolls back with the unit."""
        acl.create_permission(self.address, app, role, self.address, sender=self.address)
        yield
        acl.revoke_permission(self.address, app, role, sender=self.address)
        acl.remove_permission_manager(app, role, sender=self.address)

    def _orphan(self, principal: str, record, reason: str):
        if isinstance(record, CachedInstance):
            addresses = [h.address for h in record.components()]
        else:
            addresses = [record.token.address]
        self.orphans.append({
            "principal": principal,
            "reason": reason,
            "addresses": addresses,
            "at": datetime.now(timezone.utc).isoformat(),
        })
        log.warning("components_orphaned", principal=principal, reason=reason, addresses=addresses)

    def _purge_expired(self):
        for principal, record in self.instance_cache.purge_expired():
            self._orphan(principal, record, "expired")
        for principal, record in self.token_cache.purge_expired():
            self._orphan(principal, record, "expired")


# ==========================================
# DEMO
# ==========================================

if __name__ == "__main__":
    from charter_apps import pct

    print("\n" + "=" * 60)
    print("  CHARTER: TWO-PHASE ORGANIZATION DEMO")
    print("=" * 60)

    template = OrganizationTemplate()
    s = template.substrate
    owner = s.deploy_account()
    members = [s.deploy_account(), s.deploy_account()]
    asset = s.deploy_asset("Mana", "MANA", holders={owner: 10 ** 18})

    prepared = template.prepare_instance(owner, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT")
    print(f"\n[PREPARED] dao={prepared.dao.address}")

    done = template.finalize_instance(
        owner, "demo-org",
        [pct(50), pct(5), 7 * ONE_DAY],
        members,
        [pct(50), pct(50), ONE_DAY],
    )
    print(f"[FINALIZED] dao={done.dao.address} name={done.name}")
    print(f"  registrar: demo-org -> {template.registrar.resolve('demo-org')}")
    print(f"  managed roles: {done.audit['managed_roles']}, left missing: {len(done.audit['missing_roles'])}")
    for row in template.acl_for(done.dao.address).dump():
        print(f"  {row['kind']:<20} {row['role']:<28} grantees={len(row['grantees'])}")
    print("\n[DEMO COMPLETE]")
