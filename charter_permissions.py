"""
Charter Permission Graph
========================
Turns a finished set of components plus a designated authority into the
sequence of ACL operations that wires them together.

The builder is pure: it never reads or writes an ACL. `apply_ops` replays the
operations against an ACL on behalf of the template, and `audit` checks the
resulting graph:

  - every role of every installed component has exactly one manager, except
    roles deliberately left missing;
  - the manager is the designated authority;
  - the template keeps no grant and manages nothing once wiring is done.

Tie-break: a role may have several grantees (EXECUTE-class rights shared by
two governance tracks) but exactly one manager. Two role specs naming the
same (resource, role) with different managers are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from charter_acl import ACL, ANY_ENTITY, AppHandle, ComponentKind, Role, roles_for
from charter_errors import PermissionGraphError


# ==========================================
# OPERATIONS
# ==========================================

class OpKind(Enum):
    CREATE      = "create"
    GRANT       = "grant"
    REVOKE      = "revoke"
    SET_MANAGER = "set_manager"


@dataclass(frozen=True)
class PermissionOp:
    op: OpKind
    resource: AppHandle
    role: Role
    entity: str                     # grantee, or the new manager for SET_MANAGER
    manager: Optional[str] = None   # CREATE only


@dataclass(frozen=True)
class RoleSpec:
    """Desired end state of one (resource, role) pair."""
    resource: AppHandle
    role: Role
    grantees: Tuple[str, ...]
    manager: str


# Roles that are meant to stay uncreated: no manager, no grantee.
INTENTIONALLY_MISSING: FrozenSet[Tuple[ComponentKind, Role]] = frozenset({
    (ComponentKind.AGENT, Role.DESIGNATE_SIGNER),
    (ComponentKind.AGENT, Role.ADD_PRESIGNED_HASH),
    (ComponentKind.FINANCE, Role.CHANGE_PERIOD),
    (ComponentKind.FINANCE, Role.CHANGE_BUDGETS),
    (ComponentKind.TOKEN_MANAGER, Role.ISSUE),
    (ComponentKind.TOKEN_MANAGER, Role.ASSIGN),
    (ComponentKind.TOKEN_MANAGER, Role.REVOKE_VESTINGS),
})


# ==========================================
# COMPONENT SETS
# ==========================================

@dataclass(frozen=True)
class CouncilApps:
    """Everything a two-phase (council + community) organization ends up with."""
    dao: AppHandle
    acl: AppHandle
    script_registry: AppHandle
    agent: AppHandle
    finance: AppHandle
    token_wrapper: AppHandle
    voting_aggregator: AppHandle
    council_token_manager: AppHandle
    council_voting: AppHandle
    community_voting: AppHandle

    def installed(self) -> List[AppHandle]:
        return [getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name).kind.is_app]


@dataclass(frozen=True)
class SinglePhaseApps:
    """Component set of the legacy one-call organization."""
    dao: AppHandle
    acl: AppHandle
    script_registry: AppHandle
    agent: AppHandle
    finance: AppHandle
    token_wrapper: AppHandle
    voting: AppHandle

    def installed(self) -> List[AppHandle]:
        return [getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name).kind.is_app]


# ==========================================
# ROLE LISTS
# ==========================================

def council_role_specs(apps: CouncilApps) -> List[RoleSpec]:
    """Role list for a council-governed organization; council voting is the authority."""
    council = apps.council_voting.address
    community = apps.community_voting.address

    def held(resource: AppHandle, *roles: Role) -> List[RoleSpec]:
        return [RoleSpec(resource, role, (council,), council) for role in roles]

    specs: List[RoleSpec] = []
    specs += held(apps.script_registry, Role.REGISTRY_ADD_EXECUTOR, Role.REGISTRY_MANAGER)

    # Either governance track may move treasury funds.
    specs += [RoleSpec(apps.agent, role, (council, community), council)
              for role in (Role.EXECUTE, Role.RUN_SCRIPT)]
    specs.append(RoleSpec(apps.agent, Role.TRANSFER, (apps.finance.address,), council))

    specs += held(apps.finance, Role.CREATE_PAYMENTS, Role.EXECUTE_PAYMENTS, Role.MANAGE_PAYMENTS)

    specs.append(RoleSpec(apps.community_voting, Role.CREATE_VOTES,
                          (apps.voting_aggregator.address,), council))
    specs += held(apps.community_voting, Role.MODIFY_QUORUM, Role.MODIFY_SUPPORT)

    specs.append(RoleSpec(apps.council_voting, Role.CREATE_VOTES,
                          (apps.council_token_manager.address,), council))
    specs += held(apps.council_voting, Role.MODIFY_QUORUM, Role.MODIFY_SUPPORT)

    specs += [RoleSpec(apps.council_token_manager, role, (community,), council)
              for role in (Role.MINT, Role.BURN)]

    specs.append(RoleSpec(apps.token_wrapper, Role.INSTALL, (ANY_ENTITY,), council))

    specs += held(apps.voting_aggregator,
                  Role.ADD_POWER_SOURCE, Role.MANAGE_POWER_SOURCE, Role.MANAGE_WEIGHTS)
    return specs


def single_phase_role_specs(apps: SinglePhaseApps, authority: str) -> List[RoleSpec]:
    """Role list for the legacy one-call organization."""
    voting = apps.voting.address
    specs = [
        RoleSpec(apps.script_registry, Role.REGISTRY_ADD_EXECUTOR, (authority,), authority),
        RoleSpec(apps.script_registry, Role.REGISTRY_MANAGER, (authority,), authority),
        RoleSpec(apps.agent, Role.EXECUTE, (voting,), authority),
        RoleSpec(apps.agent, Role.RUN_SCRIPT, (voting,), authority),
        RoleSpec(apps.agent, Role.TRANSFER, (apps.finance.address,), authority),
        RoleSpec(apps.finance, Role.CREATE_PAYMENTS, (voting,), authority),
        RoleSpec(apps.finance, Role.EXECUTE_PAYMENTS, (voting,), authority),
        RoleSpec(apps.finance, Role.MANAGE_PAYMENTS, (voting,), authority),
        RoleSpec(apps.voting, Role.CREATE_VOTES, (ANY_ENTITY,), authority),
        RoleSpec(apps.voting, Role.MODIFY_QUORUM, (authority,), authority),
        RoleSpec(apps.voting, Role.MODIFY_SUPPORT, (authority,), authority),
        RoleSpec(apps.token_wrapper, Role.INSTALL, (ANY_ENTITY,), authority),
    ]
    return specs


# ==========================================
# BUILDER
# ==========================================

def merge_specs(specs: Iterable[RoleSpec]) -> List[RoleSpec]:
    """Merge specs for the same (resource, role); managers must agree."""
    merged: Dict[Tuple[str, Role], RoleSpec] = {}
    order: List[Tuple[str, Role]] = []
    for spec in specs:
        if spec.role not in roles_for(spec.resource.kind):
            raise PermissionGraphError("ACL_ROLE_NOT_ON_RESOURCE")
        key = (spec.resource.address, spec.role)
        existing = merged.get(key)
        if existing is None:
            merged[key] = spec
            order.append(key)
            continue
        if existing.manager != spec.manager:
            raise PermissionGraphError("ACL_BAD_MANAGER")
        grantees = existing.grantees + tuple(g for g in spec.grantees if g not in existing.grantees)
        merged[key] = RoleSpec(existing.resource, existing.role, grantees, existing.manager)
    return [merged[key] for key in order]


def ops_for_spec(spec: RoleSpec, template: str) -> List[PermissionOp]:
    """
    One grantee: create the permission directly under its final manager.
    Several grantees: create it for the template, grant each grantee, then
    drop the template's grant and hand the manager over.
    """
    if not spec.grantees:
        raise PermissionGraphError("ACL_NO_GRANTEES")
    if len(spec.grantees) == 1:
        return [PermissionOp(OpKind.CREATE, spec.resource, spec.role,
                             spec.grantees[0], manager=spec.manager)]

    ops = [PermissionOp(OpKind.CREATE, spec.resource, spec.role, template, manager=template)]
    ops += [PermissionOp(OpKind.GRANT, spec.resource, spec.role, g) for g in spec.grantees]
    if template not in spec.grantees:
        ops.append(PermissionOp(OpKind.REVOKE, spec.resource, spec.role, template))
    ops.append(PermissionOp(OpKind.SET_MANAGER, spec.resource, spec.role, spec.manager))
    return ops


def root_transfer_ops(dao: AppHandle, acl: AppHandle, authority: str,
                      template: str) -> List[PermissionOp]:
    """Hand APP_MANAGER and CREATE_PERMISSIONS from the template to the authority."""
    ops: List[PermissionOp] = []
    for resource, role in ((dao, Role.APP_MANAGER), (acl, Role.CREATE_PERMISSIONS)):
        ops += [
            PermissionOp(OpKind.GRANT, resource, role, authority),
            PermissionOp(OpKind.REVOKE, resource, role, template),
            PermissionOp(OpKind.SET_MANAGER, resource, role, authority),
        ]
    return ops


def build_permission_graph(dao: AppHandle, acl: AppHandle, specs: Iterable[RoleSpec],
                           authority: str, template: str) -> List[PermissionOp]:
    """Full op sequence: every role spec, then the root transfer (which must come last)."""
    ops: List[PermissionOp] = []
    for spec in merge_specs(specs):
        ops += ops_for_spec(spec, template)
    ops += root_transfer_ops(dao, acl, authority, template)
    return ops


def apply_ops(acl: ACL, ops: Iterable[PermissionOp], sender: str):
    for op in ops:
        if op.op is OpKind.CREATE:
            acl.create_permission(op.entity, op.resource, op.role, op.manager, sender=sender)
        elif op.op is OpKind.GRANT:
            acl.grant_permission(op.entity, op.resource, op.role, sender=sender)
        elif op.op is OpKind.REVOKE:
            acl.revoke_permission(op.entity, op.resource, op.role, sender=sender)
        elif op.op is OpKind.SET_MANAGER:
            acl.set_permission_manager(op.entity, op.resource, op.role, sender=sender)


# ==========================================
# AUDIT
# ==========================================

def audit(acl: ACL, resources: Iterable[AppHandle], authority: str, template: str,
          missing: FrozenSet[Tuple[ComponentKind, Role]] = INTENTIONALLY_MISSING) -> Dict:
    """
    Check the wired graph. Returns a summary; raises PermissionGraphError on
    the first violation.
    """
    managed = 0
    left_missing = []
    for resource in resources:
        for role in sorted(roles_for(resource.kind), key=lambda r: r.value):
            manager = acl.get_permission_manager(resource.address, role)
            grantees = acl.grantees(resource.address, role)
            if (resource.kind, role) in missing:
                if manager is not None or grantees:
                    raise PermissionGraphError("ACL_UNEXPECTED_ROLE")
                left_missing.append((resource.kind.value, role.value))
                continue
            if manager is None:
                raise PermissionGraphError("ACL_UNMANAGED_ROLE")
            if manager != authority:
                raise PermissionGraphError("ACL_BAD_MANAGER")
            if template in grantees:
                raise PermissionGraphError("ACL_TEMPLATE_RESIDUE")
            managed += 1
    return {"managed_roles": managed, "missing_roles": left_missing}
