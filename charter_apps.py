"""
Charter Apps
============
Minimal in-memory models of the components a template installs.

These are collaborators, not the subject of the template: they keep just
enough state to check that wiring happened (what a component is bound to,
its settings, token holdings) and to reject obviously bad initialization.
Components hold addresses of each other, never object references; anything
that needs a second component takes it as an argument, resolved by the
caller through the substrate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from charter_acl import ComponentKind, Role
from charter_errors import ComponentError

PCT_BASE = 10 ** 18          # 100% in fixed point
ONE_DAY = 60 * 60 * 24


def pct(value: float) -> int:
    """Percentage (0-100) to fixed point, e.g. pct(50) == 5 * 10**17."""
    return int(round(value * 10 ** 16))


def _supports_balance_of(obj) -> bool:
    return callable(getattr(obj, "balance_of", None))


def _auth(acl, sender: str, app, role: Role):
    if not acl.has_permission(sender, app.address, role):
        raise ComponentError("APP_AUTH_FAILED")


# ==========================================
# NON-APP ENTITIES
# ==========================================

class Account:
    """Externally-owned address. Has no code, so balance queries against it fail."""
    kind = ComponentKind.ACCOUNT

    def __init__(self, address: str):
        self.address = address


class FungibleAsset:
    """External fungible asset. `decimals` may be absent, like some old tokens."""
    kind = ComponentKind.FUNGIBLE_ASSET

    def __init__(self, address: str, name: str, symbol: str, decimals: Optional[int] = None):
        self.address = address
        self.name = name
        self.symbol = symbol
        self._decimals = decimals
        self.balances: Dict[str, int] = {}

    @property
    def total_supply(self) -> int:
        return sum(self.balances.values())

    def decimals(self) -> int:
        if self._decimals is None:
            raise ComponentError("ERC20_NO_DECIMALS")
        return self._decimals

    def balance_of(self, owner: str) -> int:
        return self.balances.get(owner, 0)

    def mint(self, to: str, amount: int):
        self.balances[to] = self.balances.get(to, 0) + amount


class MiniMeToken:
    """Controlled token. Only the controller may create or destroy units."""
    kind = ComponentKind.MINIME_TOKEN

    def __init__(self, address: str, name: str, symbol: str, decimals: int,
                 transfers_enabled: bool, controller: str):
        self.address = address
        self.name = name
        self.symbol = symbol
        self._decimals = decimals
        self.transfers_enabled = transfers_enabled
        self.controller = controller
        self.balances: Dict[str, int] = {}

    @property
    def total_supply(self) -> int:
        return sum(self.balances.values())

    def decimals(self) -> int:
        return self._decimals

    def balance_of(self, owner: str) -> int:
        return self.balances.get(owner, 0)

    def _only_controller(self, sender: str):
        if sender != self.controller:
            raise ComponentError("MINIME_ONLY_CONTROLLER")

    def change_controller(self, sender: str, new_controller: str):
        self._only_controller(sender)
        self.controller = new_controller

    def enable_transfers(self, sender: str, enabled: bool):
        self._only_controller(sender)
        self.transfers_enabled = enabled

    def generate_tokens(self, sender: str, owner: str, amount: int):
        self._only_controller(sender)
        self.balances[owner] = self.balances.get(owner, 0) + amount

    def destroy_tokens(self, sender: str, owner: str, amount: int):
        self._only_controller(sender)
        if self.balance_of(owner) < amount:
            raise ComponentError("MINIME_DESTROY_EXCEEDS_BALANCE")
        self.balances[owner] -= amount


class Multisig:
    """External multi-owner wallet; a valid top-level authority for legacy instances."""
    kind = ComponentKind.MULTISIG
    is_forwarder = True

    def __init__(self, address: str, owners: List[str], required: int):
        if not owners or required < 1 or required > len(owners):
            raise ComponentError("MULTISIG_BAD_REQUIREMENT")
        self.address = address
        self.owners = list(owners)
        self.required = required


# ==========================================
# ORGANIZATION
# ==========================================

class Kernel:
    """Root of an organization: app registry plus recovery vault pointer."""
    kind = ComponentKind.KERNEL

    def __init__(self, address: str, acl: str, script_registry: Optional[str] = None):
        self.address = address
        self.acl = acl
        self.script_registry = script_registry
        self.apps: Dict[str, List[str]] = {}
        self.recovery_vault_app_id: Optional[str] = None
        self.recovery_vault: Optional[str] = None

    def set_app(self, app_id: str, address: str):
        self.apps.setdefault(app_id, []).append(address)

    def set_recovery_vault(self, app_id: str, address: str):
        self.recovery_vault_app_id = app_id
        self.recovery_vault = address


class EVMScriptRegistry:
    kind = ComponentKind.EVM_SCRIPT_REGISTRY

    def __init__(self, address: str, dao: str):
        self.address = address
        self.dao = dao
        self.executors = ["CallsScript"]


# ==========================================
# APPS
# ==========================================

class App:
    kind: ComponentKind = None
    is_forwarder = False

    def __init__(self, address: str, dao: str, app_id: str):
        self.address = address
        self.dao = dao
        self.app_id = app_id
        self.initialized = False

    def _mark_initialized(self):
        if self.initialized:
            raise ComponentError("INIT_ALREADY_INITIALIZED")
        self.initialized = True


class Agent(App):
    """Custody component. Holds funds and runs scripts for whoever has EXECUTE."""
    kind = ComponentKind.AGENT
    is_forwarder = True

    def initialize(self):
        self._mark_initialized()
        self.designated_signer: Optional[str] = None


class Finance(App):
    kind = ComponentKind.FINANCE

    def initialize(self, vault: str, period_duration: int):
        if period_duration < ONE_DAY:
            raise ComponentError("FINANCE_SET_PERIOD_TOO_SHORT")
        self._mark_initialized()
        self.vault = vault
        self.period_duration = period_duration


class Voting(App):
    kind = ComponentKind.VOTING
    is_forwarder = True

    def initialize(self, token: str, support_required_pct: int,
                   min_accept_quorum_pct: int, vote_time: int):
        if min_accept_quorum_pct > support_required_pct:
            raise ComponentError("VOTING_INIT_PCTS")
        if support_required_pct >= PCT_BASE:
            raise ComponentError("VOTING_INIT_SUPPORT_TOO_BIG")
        self._mark_initialized()
        self.token = token
        self.support_required_pct = support_required_pct
        self.min_accept_quorum_pct = min_accept_quorum_pct
        self.vote_time = vote_time
        self.votes: List[Dict] = []

    @property
    def votes_length(self) -> int:
        return len(self.votes)


class TokenManager(App):
    """Token-issuance manager. Must be the controller of the token it manages."""
    kind = ComponentKind.TOKEN_MANAGER
    is_forwarder = True

    def initialize(self, token: MiniMeToken, transferable: bool, max_account_tokens: int):
        if token.controller != self.address:
            raise ComponentError("TM_TOKEN_CONTROLLER")
        self._mark_initialized()
        self.token = token.address
        self.max_account_tokens = max_account_tokens
        token.enable_transfers(self.address, transferable)

    def mint(self, acl, sender: str, token: MiniMeToken, receiver: str, amount: int):
        _auth(acl, sender, self, Role.MINT)
        if token.address != self.token:
            raise ComponentError("TM_WRONG_TOKEN")
        if token.balance_of(receiver) + amount > self.max_account_tokens:
            raise ComponentError("TM_MINT_RECEIVER_AMOUNT_EXCEEDS_LIMIT")
        token.generate_tokens(self.address, receiver, amount)

    def burn(self, acl, sender: str, token: MiniMeToken, holder: str, amount: int):
        _auth(acl, sender, self, Role.BURN)
        if token.address != self.token:
            raise ComponentError("TM_WRONG_TOKEN")
        token.destroy_tokens(self.address, holder, amount)


class TokenWrapper(App):
    """
    Wraps an external fungible asset. In the single-phase variant it also
    controls an organization token that mirrors wrapped balances.
    """
    kind = ComponentKind.TOKEN_WRAPPER

    def initialize(self, deposited_token, name: str, symbol: str,
                   org_token: Optional[MiniMeToken] = None):
        if not _supports_balance_of(deposited_token):
            raise ComponentError("TW_TOKEN_NOT_CONTRACT")
        if org_token is not None and org_token.controller != self.address:
            raise ComponentError("TW_TOKEN_CONTROLLER")
        self._mark_initialized()
        self.deposited_token = deposited_token.address
        self.name = name
        self.symbol = symbol
        self.org_token = org_token.address if org_token is not None else None
        try:
            self._decimals: Optional[int] = deposited_token.decimals()
        except ComponentError:
            self._decimals = None
        self.balances: Dict[str, int] = {}

    def decimals(self) -> int:
        if self._decimals is None:
            raise ComponentError("TW_NO_DECIMALS")
        return self._decimals

    def balance_of(self, owner: str) -> int:
        return self.balances.get(owner, 0)


class PowerSourceType(Enum):
    INVALID = 0
    ERC20_WITH_CHECKPOINTING = 1
    ERC900 = 2


@dataclass
class PowerSource:
    source_type: PowerSourceType
    enabled: bool
    weight: int


class VotingAggregator(App):
    """Sums voting power over its registered sources."""
    kind = ComponentKind.VOTING_AGGREGATOR
    is_forwarder = True

    def initialize(self, name: str, symbol: str, decimals: int):
        self._mark_initialized()
        self.name = name
        self.symbol = symbol
        self._decimals = decimals
        self.power_sources: List[str] = []
        self.source_details: Dict[str, PowerSource] = {}

    def decimals(self) -> int:
        return self._decimals

    def add_power_source(self, acl, sender: str, source, source_type: PowerSourceType, weight: int):
        _auth(acl, sender, self, Role.ADD_POWER_SOURCE)
        if source_type is PowerSourceType.INVALID:
            raise ComponentError("VA_INVALID_SOURCE_TYPE")
        if weight <= 0:
            raise ComponentError("VA_ZERO_WEIGHT")
        if not _supports_balance_of(source):
            raise ComponentError("VA_SOURCE_NOT_CONTRACT")
        if source.address in self.source_details:
            raise ComponentError("VA_SOURCE_ALREADY_ADDED")
        self.power_sources.append(source.address)
        self.source_details[source.address] = PowerSource(source_type, True, weight)

    def get_power_source_details(self, address: str) -> PowerSource:
        if address not in self.source_details:
            raise ComponentError("VA_NO_POWER_SOURCE")
        return self.source_details[address]

    @property
    def power_sources_length(self) -> int:
        return len(self.power_sources)

    def balance_of(self, owner: str, lookup: Callable[[str], object]) -> int:
        """Weighted sum of `owner`'s balance over enabled sources, found through `lookup`."""
        total = 0
        for address in self.power_sources:
            details = self.source_details[address]
            source = lookup(address)
            if details.enabled and source is not None:
                total += source.balance_of(owner) * details.weight
        return total


APP_CLASSES = {
    ComponentKind.AGENT: Agent,
    ComponentKind.FINANCE: Finance,
    ComponentKind.VOTING: Voting,
    ComponentKind.TOKEN_MANAGER: TokenManager,
    ComponentKind.TOKEN_WRAPPER: TokenWrapper,
    ComponentKind.VOTING_AGGREGATOR: VotingAggregator,
}
