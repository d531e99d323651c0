"""
Charter ACL
===========
Access control list for a templated organization.

Roles are a tagged enumeration: every role belongs to exactly one component
kind, and the ACL refuses to create a (resource, role) pair whose role is not
defined for the resource's kind. Resources are referenced through typed
`AppHandle`s, never bare addresses, so a role cannot be wired onto the wrong
component by address confusion.

A (resource, role) pair has at most one manager and any number of grantees.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from charter_errors import (
    ExistentPermissionError, NoPermissionError, RoleNotOnResourceError,
)


# Universal grantee: a permission granted to it is held by every address.
ANY_ENTITY = "0x" + "f" * 40


# ==========================================
# KINDS & ROLES
# ==========================================

class ComponentKind(Enum):
    KERNEL              = "kernel"
    ACL                 = "acl"
    EVM_SCRIPT_REGISTRY = "evm-script-registry"
    AGENT               = "agent"
    FINANCE             = "finance"
    VOTING              = "voting"
    TOKEN_MANAGER       = "token-manager"
    TOKEN_WRAPPER       = "token-wrapper"
    VOTING_AGGREGATOR   = "voting-aggregator"
    MINIME_TOKEN        = "minime-token"   # not an app: no roles, not installed
    FUNGIBLE_ASSET      = "erc20"          # external asset
    MULTISIG            = "multisig"       # external authority
    ACCOUNT             = "account"        # plain externally-owned address

    @property
    def is_app(self) -> bool:
        return self in INSTALLABLE_KINDS


INSTALLABLE_KINDS = frozenset({
    ComponentKind.AGENT,
    ComponentKind.FINANCE,
    ComponentKind.VOTING,
    ComponentKind.TOKEN_MANAGER,
    ComponentKind.TOKEN_WRAPPER,
    ComponentKind.VOTING_AGGREGATOR,
})


class Role(Enum):
    # Organization
    APP_MANAGER          = "APP_MANAGER_ROLE"
    CREATE_PERMISSIONS   = "CREATE_PERMISSIONS_ROLE"
    REGISTRY_ADD_EXECUTOR = "REGISTRY_ADD_EXECUTOR_ROLE"
    REGISTRY_MANAGER     = "REGISTRY_MANAGER_ROLE"
    # Custody
    EXECUTE              = "EXECUTE_ROLE"
    RUN_SCRIPT           = "RUN_SCRIPT_ROLE"
    TRANSFER             = "TRANSFER_ROLE"
    DESIGNATE_SIGNER     = "DESIGNATE_SIGNER_ROLE"
    ADD_PRESIGNED_HASH   = "ADD_PRESIGNED_HASH_ROLE"
    # Funds ledger
    CREATE_PAYMENTS      = "CREATE_PAYMENTS_ROLE"
    EXECUTE_PAYMENTS     = "EXECUTE_PAYMENTS_ROLE"
    MANAGE_PAYMENTS      = "MANAGE_PAYMENTS_ROLE"
    CHANGE_PERIOD        = "CHANGE_PERIOD_ROLE"
    CHANGE_BUDGETS       = "CHANGE_BUDGETS_ROLE"
    # Voting
    CREATE_VOTES         = "CREATE_VOTES_ROLE"
    MODIFY_QUORUM        = "MODIFY_QUORUM_ROLE"
    MODIFY_SUPPORT       = "MODIFY_SUPPORT_ROLE"
    # Token-issuance manager
    MINT                 = "MINT_ROLE"
    ISSUE                = "ISSUE_ROLE"
    ASSIGN               = "ASSIGN_ROLE"
    REVOKE_VESTINGS      = "REVOKE_VESTINGS_ROLE"
    BURN                 = "BURN_ROLE"
    # Token-wrapper: placeholder created at install so the app has a manager
    INSTALL              = "INSTALL_ROLE"
    # Vote-power aggregator
    ADD_POWER_SOURCE     = "ADD_POWER_SOURCE_ROLE"
    MANAGE_POWER_SOURCE  = "MANAGE_POWER_SOURCE_ROLE"
    MANAGE_WEIGHTS       = "MANAGE_WEIGHTS_ROLE"


ROLES_BY_KIND: Dict[ComponentKind, FrozenSet[Role]] = {
    ComponentKind.KERNEL: frozenset({Role.APP_MANAGER}),
    ComponentKind.ACL: frozenset({Role.CREATE_PERMISSIONS}),
    ComponentKind.EVM_SCRIPT_REGISTRY: frozenset({Role.REGISTRY_ADD_EXECUTOR, Role.REGISTRY_MANAGER}),
    ComponentKind.AGENT: frozenset({
        Role.EXECUTE, Role.RUN_SCRIPT, Role.TRANSFER,
        Role.DESIGNATE_SIGNER, Role.ADD_PRESIGNED_HASH,
    }),
    ComponentKind.FINANCE: frozenset({
        Role.CREATE_PAYMENTS, Role.EXECUTE_PAYMENTS, Role.MANAGE_PAYMENTS,
        Role.CHANGE_PERIOD, Role.CHANGE_BUDGETS,
    }),
    ComponentKind.VOTING: frozenset({Role.CREATE_VOTES, Role.MODIFY_QUORUM, Role.MODIFY_SUPPORT}),
    ComponentKind.TOKEN_MANAGER: frozenset({
        Role.MINT, Role.ISSUE, Role.ASSIGN, Role.REVOKE_VESTINGS, Role.BURN,
    }),
    ComponentKind.TOKEN_WRAPPER: frozenset({Role.INSTALL}),
    ComponentKind.VOTING_AGGREGATOR: frozenset({
        Role.ADD_POWER_SOURCE, Role.MANAGE_POWER_SOURCE, Role.MANAGE_WEIGHTS,
    }),
}


def roles_for(kind: ComponentKind) -> FrozenSet[Role]:
    return ROLES_BY_KIND.get(kind, frozenset())


# ==========================================
# HANDLES & GRANTS
# ==========================================

@dataclass(frozen=True)
class AppHandle:
    """Typed reference to a deployed component."""
    kind: ComponentKind
    address: str

    def __str__(self) -> str:
        return f"{self.kind.value}@{self.address[:10]}"


@dataclass(frozen=True)
class PermissionGrant:
    """One directed edge of the permission graph."""
    resource: str
    resource_kind: ComponentKind
    role: Role
    manager: Optional[str]
    grantee: str


@dataclass
class PermissionEntry:
    manager: Optional[str] = None
    grantees: Set[str] = field(default_factory=set)


# ==========================================
# ACL
# ==========================================

class ACL:
    """
    Mapping (resource, role) -> {manager, grantees}.

    Mutations are authorized against `sender`: creating a permission needs
    CREATE_PERMISSIONS on the ACL itself, everything else needs to be the
    role's manager.
    """

    def __init__(self, address: str):
        self.address = address
        self._permissions: Dict[Tuple[str, Role], PermissionEntry] = {}
        self._resource_kinds: Dict[str, ComponentKind] = {}

    @property
    def handle(self) -> AppHandle:
        return AppHandle(ComponentKind.ACL, self.address)

    def initialize(self, permissions_creator: str):
        """Seed the root role: whoever creates the organization may create permissions."""
        self._resource_kinds[self.address] = ComponentKind.ACL
        self._permissions[(self.address, Role.CREATE_PERMISSIONS)] = PermissionEntry(
            manager=permissions_creator, grantees={permissions_creator},
        )

    # ------ queries ------

    def has_permission(self, who: str, resource: str, role: Role) -> bool:
        entry = self._permissions.get((resource, role))
        if entry is None:
            return False
        return who in entry.grantees or ANY_ENTITY in entry.grantees

    def get_permission_manager(self, resource: str, role: Role) -> Optional[str]:
        entry = self._permissions.get((resource, role))
        return entry.manager if entry else None

    def grantees(self, resource: str, role: Role) -> FrozenSet[str]:
        entry = self._permissions.get((resource, role))
        return frozenset(entry.grantees) if entry else frozenset()

    def created_roles(self, resource: str) -> FrozenSet[Role]:
        return frozenset(role for (res, role) in self._permissions if res == resource)

    def resource_kind(self, resource: str) -> Optional[ComponentKind]:
        return self._resource_kinds.get(resource)

    def grants(self) -> Iterator[PermissionGrant]:
        """Every (resource, role, grantee) edge, in a stable order."""
        for (resource, role), entry in sorted(
            self._permissions.items(), key=lambda kv: (kv[0][0], kv[0][1].value)
        ):
            for grantee in sorted(entry.grantees):
                yield PermissionGrant(
                    resource=resource,
                    resource_kind=self._resource_kinds[resource],
                    role=role,
                    manager=entry.manager,
                    grantee=grantee,
                )

    def dump(self) -> List[Dict]:
        rows = []
        for (resource, role), entry in sorted(
            self._permissions.items(), key=lambda kv: (kv[0][0], kv[0][1].value)
        ):
            rows.append({
                "resource": resource,
                "kind": self._resource_kinds[resource].value,
                "role": role.value,
                "manager": entry.manager,
                "grantees": sorted(entry.grantees),
            })
        return rows

    # ------ mutations ------

    def create_permission(self, entity: str, app: AppHandle, role: Role, manager: str, sender: str):
        if not self.has_permission(sender, self.address, Role.CREATE_PERMISSIONS):
            raise NoPermissionError()
        if role not in roles_for(app.kind):
            raise RoleNotOnResourceError()
        key = (app.address, role)
        existing = self._permissions.get(key)
        if existing is not None and existing.manager is not None:
            raise ExistentPermissionError()
        self._resource_kinds[app.address] = app.kind
        self._permissions[key] = PermissionEntry(manager=manager, grantees={entity})

    def grant_permission(self, entity: str, app: AppHandle, role: Role, sender: str):
        entry = self._managed_by(app, role, sender)
        entry.grantees.add(entity)

    def revoke_permission(self, entity: str, app: AppHandle, role: Role, sender: str):
        entry = self._managed_by(app, role, sender)
        entry.grantees.discard(entity)

    def set_permission_manager(self, new_manager: str, app: AppHandle, role: Role, sender: str):
        entry = self._managed_by(app, role, sender)
        entry.manager = new_manager

    def remove_permission_manager(self, app: AppHandle, role: Role, sender: str):
        entry = self._managed_by(app, role, sender)
        entry.manager = None

    def _managed_by(self, app: AppHandle, role: Role, sender: str) -> PermissionEntry:
        if role not in roles_for(app.kind):
            raise RoleNotOnResourceError()
        entry = self._permissions.get((app.address, role))
        if entry is None or entry.manager != sender:
            raise NoPermissionError()
        return entry
