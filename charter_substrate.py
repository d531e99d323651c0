"""
Charter Substrate
=================
The state substrate templates run on, plus its two service collaborators.

  - Substrate:          address allocation, entity storage, event log, and
                        atomic units of work (all-or-nothing, serially ordered).
  - ComponentInstaller: creates organizations, installs apps, deploys tokens.
                        Returns typed handles directly; events are a record,
                        not the only way to learn an address.
  - NameRegistrar:      first-come-first-served names under a parent domain.

Everything mutable lives in one state dict. Writes inside an atomic unit are
journaled so a failed unit can be undone without copying the whole state.
"""

from __future__ import annotations

import copy
import hashlib
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

import structlog

from charter_acl import ACL, AppHandle, ComponentKind, Role
from charter_apps import (
    APP_CLASSES, Account, EVMScriptRegistry, FungibleAsset, Kernel, MiniMeToken, Multisig,
)
from charter_errors import NameTakenError, NoPermissionError

log = structlog.get_logger()

APM_DOMAIN = "aragonpm.eth"


# ==========================================
# HASHING
# ==========================================

def namehash(name: str) -> str:
    """Hierarchical name hash: node = H(parent_node + H(label)), root = 32 zero bytes."""
    node = b"\x00" * 32
    if name:
        for label in reversed(name.split(".")):
            label_hash = hashlib.sha3_256(label.encode()).digest()
            node = hashlib.sha3_256(node + label_hash).digest()
    return "0x" + node.hex()


def app_id_for(kind: ComponentKind) -> str:
    return namehash(f"{kind.value}.{APM_DOMAIN}")


# ==========================================
# EVENTS & RECEIPTS
# ==========================================

@dataclass(frozen=True)
class Event:
    name: str
    args: Dict[str, Any]


@dataclass
class Receipt:
    """Events emitted by one atomic unit, in emission order."""
    events: List[Event] = field(default_factory=list)

    def events_named(self, name: str) -> List[Event]:
        return [e for e in self.events if e.name == name]

    def event_arg(self, name: str, arg: str, index: int = 0) -> Any:
        matches = self.events_named(name)
        if len(matches) <= index:
            raise KeyError(f"no {name} event at index {index}")
        return matches[index].args[arg]

    def installed_apps(self, app_id: str) -> List[str]:
        return [e.args["app_proxy"] for e in self.events_named("InstallApp")
                if e.args["app_id"] == app_id]

    def installed_apps_by_kind(self) -> Dict[str, List[str]]:
        by_id = {app_id_for(kind): kind.value for kind in APP_CLASSES}
        result: Dict[str, List[str]] = {}
        for e in self.events_named("InstallApp"):
            kind = by_id.get(e.args["app_id"])
            if kind is not None:
                result.setdefault(kind, []).append(e.args["app_proxy"])
        return result

    def extend(self, other: "Receipt"):
        self.events.extend(other.events)


# ==========================================
# SUBSTRATE
# ==========================================

class _UnitJournal:
    """Undo records for one open atomic unit."""

    def __init__(self, nonce: int, events: int):
        self.nonce = nonce
        self.events = events
        self.created: Set[str] = set()
        self.touched: Dict[str, Tuple[Any, Dict[str, Any]]] = {}
        self.names: List[Tuple[str, str, Optional[str]]] = []

    def rollback(self, state: Dict[str, Any]):
        for domain, label, previous in reversed(self.names):
            names = state["names"].setdefault(domain, {})
            if previous is None:
                names.pop(label, None)
            else:
                names[label] = previous
        for entity, before in self.touched.values():
            entity.__dict__.clear()
            entity.__dict__.update(before)
        for address in self.created:
            state["entities"].pop(address, None)
        del state["events"][self.events:]
        state["nonce"] = self.nonce


class Substrate:
    """
    In-process state store with atomic units.

    `atomic()` holds a re-entrant lock for the whole unit, so units never
    interleave. Each unit keeps an undo journal: the nonce and event-log
    length at entry, the addresses it deployed, the names it claimed, and a
    copy of every pre-existing entity's fields taken the first time the unit
    reads that entity. On any exception the journal is replayed backwards
    and the exception propagates. Entities are restored in place, so callers
    holding a reference see the rolled-back fields.
    """

    def __init__(self, seed: str = "charter"):
        self._seed = seed
        self._lock = threading.RLock()
        self._units: List[_UnitJournal] = []
        self._state: Dict[str, Any] = {
            "nonce": 0,
            "entities": {},
            "events": [],
            "names": {},
        }

    # ------ atomic units ------

    @contextmanager
    def atomic(self) -> Iterator[Receipt]:
        with self._lock:
            journal = _UnitJournal(self._state["nonce"], len(self._state["events"]))
            self._units.append(journal)
            receipt = Receipt()
            try:
                yield receipt
            except BaseException:
                journal.rollback(self._state)
                raise
            finally:
                self._units.pop()
            receipt.events.extend(self._state["events"][journal.events:])

    def _touch(self, address: str, entity):
        for journal in self._units:
            if address not in journal.created and address not in journal.touched:
                journal.touched[address] = (entity, copy.deepcopy(entity.__dict__))

    # ------ entities ------

    def new_address(self) -> str:
        self._state["nonce"] += 1
        digest = hashlib.sha256(f"{self._seed}:{self._state['nonce']}".encode()).hexdigest()
        return "0x" + digest[:40]

    def deploy(self, factory, *args, **kwargs):
        address = self.new_address()
        entity = factory(address, *args, **kwargs)
        self._state["entities"][address] = entity
        for journal in self._units:
            journal.created.add(address)
        return entity

    def get(self, address: str) -> Optional[Any]:
        entity = self._state["entities"].get(address)
        if entity is not None and self._units:
            self._touch(address, entity)
        return entity

    def resolve(self, handle: AppHandle):
        entity = self.get(handle.address)
        if entity is None or entity.kind is not handle.kind:
            raise LookupError(f"no {handle.kind.value} at {handle.address}")
        return entity

    def acl_of(self, dao: AppHandle) -> ACL:
        kernel = self.resolve(dao)
        return self.get(kernel.acl)

    # ------ events ------

    def emit(self, name: str, **args):
        self._state["events"].append(Event(name, dict(args)))

    @property
    def events(self) -> List[Event]:
        return list(self._state["events"])

    # ------ names ------

    def name_owner(self, domain: str, label: str) -> Optional[str]:
        return self._state["names"].get(domain, {}).get(label)

    def set_name(self, domain: str, label: str, owner: str):
        names = self._state["names"].setdefault(domain, {})
        for journal in self._units:
            journal.names.append((domain, label, names.get(label)))
        names[label] = owner

    # ------ dev helpers ------

    def deploy_account(self) -> str:
        with self.atomic():
            return self.deploy(Account).address

    def deploy_asset(self, name: str, symbol: str, decimals: Optional[int] = None,
                     holders: Optional[Dict[str, int]] = None) -> str:
        with self.atomic():
            asset = self.deploy(FungibleAsset, name, symbol, decimals)
            for holder, amount in (holders or {}).items():
                asset.mint(holder, amount)
        return asset.address

    def deploy_multisig(self, owners: List[str], required: int) -> str:
        with self.atomic():
            wallet = self.deploy(Multisig, owners, required)
        return wallet.address


# ==========================================
# COMPONENT INSTALLER
# ==========================================

class ComponentInstaller:
    """Deploys organizations, apps and tokens on a substrate."""

    def __init__(self, substrate: Substrate):
        self.substrate = substrate

    def new_dao(self, root: str) -> AppHandle:
        """Create a bare organization whose ACL root and app manager is `root`."""
        s = self.substrate
        acl = s.deploy(ACL)
        kernel = s.deploy(Kernel, acl.address)
        kernel.script_registry = s.deploy(EVMScriptRegistry, kernel.address).address
        kernel_address = kernel.address

        acl.initialize(root)
        acl.create_permission(root, AppHandle(ComponentKind.KERNEL, kernel_address),
                              Role.APP_MANAGER, root, sender=root)
        log.info("dao_deployed", dao=kernel_address, acl=acl.address, root=root)
        return AppHandle(ComponentKind.KERNEL, kernel_address)

    def install(self, dao: AppHandle, kind: ComponentKind, sender: str,
                default_vault: bool = False, on_deploy: Optional[Callable[[AppHandle], None]] = None,
                **init_params) -> AppHandle:
        """
        Install and initialize an app of `kind` into `dao`.
        `sender` must hold APP_MANAGER on the organization. `on_deploy` runs
        between deployment and initialization (e.g. to hand a token's
        controller to the new app).
        """
        s = self.substrate
        kernel = s.resolve(dao)
        acl: ACL = s.get(kernel.acl)
        if not acl.has_permission(sender, kernel.address, Role.APP_MANAGER):
            raise NoPermissionError()

        app_id = app_id_for(kind)
        app = s.deploy(APP_CLASSES[kind], kernel.address, app_id)
        kernel.set_app(app_id, app.address)
        if default_vault:
            kernel.set_recovery_vault(app_id, app.address)
        s.emit("InstallApp", dao=kernel.address, app_proxy=app.address, app_id=app_id)
        if on_deploy is not None:
            on_deploy(AppHandle(kind, app.address))
        app.initialize(**init_params)
        log.info("app_installed", dao=kernel.address, kind=kind.value, app=app.address)
        return AppHandle(kind, app.address)

    def new_token(self, name: str, symbol: str, controller: str,
                  decimals: int = 18, transferable: bool = True) -> AppHandle:
        token = self.substrate.deploy(MiniMeToken, name, symbol, decimals, transferable, controller)
        return AppHandle(ComponentKind.MINIME_TOKEN, token.address)


# ==========================================
# NAME REGISTRAR
# ==========================================

class NameRegistrar:
    """First-come-first-served registrar for `<label>.<domain>`."""

    def __init__(self, substrate: Substrate, domain: str = "aragonid.eth"):
        self.substrate = substrate
        self.domain = domain

    def is_available(self, label: str) -> bool:
        return self.substrate.name_owner(self.domain, label) is None

    def register(self, label: str, owner: str):
        if not self.is_available(label):
            raise NameTakenError()
        self.substrate.set_name(self.domain, label, owner)
        node = namehash(f"{label}.{self.domain}")
        self.substrate.emit("ClaimSubdomain", label=label, node=node, owner=owner)
        log.info("name_registered", name=f"{label}.{self.domain}", owner=owner)

    def resolve(self, label: str) -> Optional[str]:
        return self.substrate.name_owner(self.domain, label)
