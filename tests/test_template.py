"""
Tests for charter_template.py

Run with:  pytest tests/test_template.py -v
"""

from dataclasses import fields

import pytest

from charter_acl import ANY_ENTITY, ComponentKind, Role
from charter_apps import ONE_DAY, PowerSource, PowerSourceType, pct
from charter_errors import (
    BadExternalAssetError, BadMultisigOrAuthorityError, ComponentError, InvalidIdError,
    InvalidVotingSettingsError, MissingCacheError, MissingCouncilMembersError, NameTakenError,
    RoleNotOnResourceError,
)
from charter_permissions import INTENTIONALLY_MISSING
from charter_substrate import app_id_for
from charter_template import DEFAULT_FINANCE_PERIOD, OrganizationTemplate, VotingSettings

COMMUNITY = [pct(50), pct(5), 7 * ONE_DAY]
COUNCIL = [pct(50), pct(50), ONE_DAY]


# ==========================================
# Fixtures
# ==========================================

@pytest.fixture()
def template():
    return OrganizationTemplate()


@pytest.fixture()
def owner(template):
    return template.substrate.deploy_account()


@pytest.fixture()
def members(template):
    return [template.substrate.deploy_account() for _ in range(3)]


@pytest.fixture()
def asset(template, owner):
    return template.substrate.deploy_asset("Mana", "MANA", 18, {owner: 10 ** 18})


@pytest.fixture()
def prepared(template, owner, asset):
    return prepare(template, owner, asset)


@pytest.fixture()
def finalized(template, owner, members, prepared):
    return template.finalize_instance(owner, "council-org", COMMUNITY, members, COUNCIL)


# ==========================================
# Helpers
# ==========================================

def prepare(template, principal, asset):
    return template.prepare_instance(principal, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT")


def graph_by_kind(template, apps):
    """ACL rows with addresses replaced by the component slot they belong to."""
    labels = {getattr(apps, f.name).address: f.name for f in fields(apps)}
    labels[ANY_ENTITY] = "any"
    rows = []
    for row in template.acl_for(apps.dao.address).dump():
        rows.append((
            labels[row["resource"]], row["role"], labels.get(row["manager"], row["manager"]),
            tuple(sorted(labels.get(g, g) for g in row["grantees"])),
        ))
    return sorted(rows)


# ==========================================
# Voting settings
# ==========================================

class TestVotingSettings:
    def test_full(self):
        assert VotingSettings.from_sequence([1, 2, 3]) == VotingSettings(1, 2, 3)

    def test_missing_values_read_as_zero(self):
        assert VotingSettings.from_sequence([pct(50)]) == VotingSettings(pct(50), 0, 0)
        assert VotingSettings.from_sequence([]) == VotingSettings(0, 0, 0)

    def test_too_many_values(self):
        with pytest.raises(InvalidVotingSettingsError, match="CHARTER_BAD_VOTING_SETTINGS"):
            VotingSettings.from_sequence([1, 2, 3, 4])

    def test_negative_value(self):
        with pytest.raises(InvalidVotingSettingsError):
            VotingSettings.from_sequence([1, -2, 3])


# ==========================================
# Prepare
# ==========================================

class TestPrepare:
    def test_agent_is_recovery_vault(self, template, prepared):
        kernel = template.resolve(prepared.dao.address)
        assert kernel.recovery_vault == prepared.cached.agent.address
        assert kernel.recovery_vault_app_id == app_id_for(ComponentKind.AGENT)
        assert template.resolve(prepared.cached.agent.address).designated_signer is None

    def test_events(self, prepared):
        receipt = prepared.receipt
        assert receipt.event_arg("DeployDao", "dao") == prepared.dao.address
        assert set(receipt.installed_apps_by_kind()) == {"agent", "token-wrapper", "voting-aggregator"}

    def test_wrapper_over_asset(self, template, prepared, asset):
        wrapper = template.resolve(prepared.cached.token_wrapper.address)
        assert wrapper.deposited_token == asset
        assert (wrapper.name, wrapper.symbol) == ("Wrapped Mana", "wMANA")
        assert wrapper.decimals() == 18

    def test_aggregator_seeded_with_wrapper(self, template, prepared):
        aggregator = template.resolve(prepared.cached.voting_aggregator.address)
        assert aggregator.decimals() == 18
        assert (aggregator.name, aggregator.symbol) == ("Voting Token", "DVT")
        assert aggregator.power_sources_length == 1
        details = aggregator.get_power_source_details(prepared.cached.token_wrapper.address)
        assert details == PowerSource(PowerSourceType.ERC20_WITH_CHECKPOINTING, True, 1)

    def test_template_drops_temporary_role(self, template, prepared):
        acl = template.acl_for(prepared.dao.address)
        aggregator = prepared.cached.voting_aggregator.address
        assert not acl.has_permission(template.address, aggregator, Role.ADD_POWER_SOURCE)
        assert acl.get_permission_manager(aggregator, Role.ADD_POWER_SOURCE) is None

    def test_caches_for_caller(self, template, owner, prepared):
        assert template.pending(owner) == prepared.cached

    def test_account_is_not_an_asset(self, template, owner):
        with pytest.raises(BadExternalAssetError, match="CHARTER_BAD_EXTERNAL_TOKEN"):
            prepare(template, owner, template.substrate.deploy_account())

    def test_unknown_address_is_not_an_asset(self, template, owner):
        with pytest.raises(BadExternalAssetError):
            prepare(template, owner, "0x" + "9" * 40)

    def test_bad_asset_leaves_nothing_behind(self, template, owner):
        events_before = len(template.substrate.events)
        with pytest.raises(BadExternalAssetError):
            prepare(template, owner, template.substrate.deploy_account())
        assert len(template.substrate.events) == events_before
        assert template.pending(owner) is None

    def test_asset_without_decimals(self, template, owner):
        bare = template.substrate.deploy_asset("Old", "OLD")
        result = prepare(template, owner, bare)
        wrapper = template.resolve(result.cached.token_wrapper.address)
        with pytest.raises(ComponentError, match="TW_NO_DECIMALS"):
            wrapper.decimals()

    def test_second_prepare_overwrites(self, template, owner, asset, members):
        first = prepare(template, owner, asset)
        second = prepare(template, owner, asset)
        assert template.pending(owner).dao == second.dao
        assert template.orphans[-1]["reason"] == "superseded"
        assert first.dao.address in template.orphans[-1]["addresses"]
        result = template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)
        assert result.dao == second.dao

    def test_principals_do_not_interfere(self, template, owner, asset, members):
        other = template.substrate.deploy_account()
        mine = prepare(template, owner, asset)
        theirs = prepare(template, other, asset)
        template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)
        assert template.pending(other).dao == theirs.dao
        assert mine.dao != theirs.dao


# ==========================================
# Finalize: preconditions
# ==========================================

class TestFinalizePreconditions:
    def test_without_prepare(self, template, owner, members):
        with pytest.raises(MissingCacheError, match="CHARTER_MISSING_CACHE"):
            template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)

    def test_empty_council(self, template, owner, prepared):
        with pytest.raises(MissingCouncilMembersError, match="CHARTER_MISSING_COUNCIL_MEMBERS"):
            template.finalize_instance(owner, "", COMMUNITY, [], COUNCIL)
        assert template.pending(owner) == prepared.cached

    def test_empty_council_without_prepare(self, template, owner):
        with pytest.raises(MissingCouncilMembersError):
            template.finalize_instance(owner, "", COMMUNITY, [], COUNCIL)

    @pytest.mark.parametrize("bad_id, community", [
        ("Bad Id", COMMUNITY),
        ("trailing\n", COMMUNITY),
        ("", [1, 2, 3, 4]),
    ])
    def test_missing_cache_reported_before_arguments(self, template, owner, members,
                                                     bad_id, community):
        with pytest.raises(MissingCacheError):
            template.finalize_instance(owner, bad_id, community, members, COUNCIL)

    def test_missing_cache_reported_before_taken_name(self, template, owner, members, finalized):
        other = template.substrate.deploy_account()
        with pytest.raises(MissingCacheError):
            template.finalize_instance(other, "council-org", COMMUNITY, members, COUNCIL)

    @pytest.mark.parametrize("bad_id", [
        "Upper", "has space", "-leading", "trailing-", "dot.ted", "trailing\n", "\nleading",
    ])
    def test_malformed_id(self, template, owner, members, prepared, bad_id):
        with pytest.raises(InvalidIdError, match="CHARTER_INVALID_ID"):
            template.finalize_instance(owner, bad_id, COMMUNITY, members, COUNCIL)
        assert template.pending(owner) == prepared.cached

    def test_bad_settings_keep_cache(self, template, owner, members, prepared):
        with pytest.raises(InvalidVotingSettingsError):
            template.finalize_instance(owner, "", [1, 2, 3, 4], members, COUNCIL)
        assert template.pending(owner) == prepared.cached

    def test_name_taken(self, template, owner, members, asset, finalized):
        other = template.substrate.deploy_account()
        prepare(template, other, asset)
        with pytest.raises(NameTakenError, match="REGISTRAR_NAME_TAKEN"):
            template.finalize_instance(other, "council-org", COMMUNITY, members, COUNCIL)
        assert template.pending(other) is not None

    def test_name_with_trailing_newline_is_not_a_new_name(self, template, owner, members,
                                                         asset, finalized):
        other = template.substrate.deploy_account()
        prepare(template, other, asset)
        with pytest.raises(InvalidIdError):
            template.finalize_instance(other, "council-org\n", COMMUNITY, members, COUNCIL)
        assert template.pending(other) is not None
        assert template.registrar.resolve("council-org\n") is None

    def test_second_finalize(self, template, owner, members, finalized):
        with pytest.raises(MissingCacheError):
            template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)


# ==========================================
# Finalize: result
# ==========================================

class TestFinalize:
    def test_name_registered(self, template, finalized):
        assert template.registrar.resolve("council-org") == finalized.dao.address
        assert finalized.receipt.event_arg("ClaimSubdomain", "label") == "council-org"
        assert finalized.name == "council-org"

    def test_empty_id_registers_nothing(self, template, owner, members, prepared):
        result = template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)
        assert result.receipt.events_named("ClaimSubdomain") == []
        assert result.name is None

    def test_events(self, finalized):
        receipt = finalized.receipt
        assert receipt.event_arg("SetupDao", "dao") == finalized.dao.address
        assert receipt.event_arg("DeployToken", "token") == finalized.council_token.address
        votings = receipt.installed_apps(app_id_for(ComponentKind.VOTING))
        assert votings == [finalized.apps.council_voting.address, finalized.apps.community_voting.address]

    def test_finance_default_period(self, template, finalized):
        finance = template.resolve(finalized.apps.finance.address)
        assert finance.period_duration == DEFAULT_FINANCE_PERIOD == 30 * ONE_DAY
        assert finance.vault == finalized.apps.agent.address

    def test_finance_custom_period(self, template, owner, members, prepared):
        result = template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL, 15 * ONE_DAY)
        assert template.resolve(result.apps.finance.address).period_duration == 15 * ONE_DAY

    def test_council_token(self, template, members, finalized):
        token = template.resolve(finalized.council_token.address)
        assert token.decimals() == 0
        assert token.transfers_enabled is False
        assert token.controller == finalized.apps.council_token_manager.address
        assert all(token.balance_of(m) == 1 for m in members)
        assert token.total_supply == len(members)
        assert template.resolve(finalized.apps.council_token_manager.address).max_account_tokens == 1

    def test_council_cannot_hold_two(self, template, members, finalized):
        apps = finalized.apps
        manager = template.resolve(apps.council_token_manager.address)
        token = template.resolve(finalized.council_token.address)
        acl = template.acl_for(apps.dao.address)
        with pytest.raises(ComponentError, match="TM_MINT_RECEIVER_AMOUNT_EXCEEDS_LIMIT"):
            manager.mint(acl, apps.community_voting.address, token, members[0], 1)

    def test_votings_bound_and_configured(self, template, finalized):
        apps = finalized.apps
        council = template.resolve(apps.council_voting.address)
        community = template.resolve(apps.community_voting.address)
        assert council.token == finalized.council_token.address
        assert community.token == apps.voting_aggregator.address
        assert (council.support_required_pct, council.min_accept_quorum_pct, council.vote_time) == tuple(COUNCIL)
        assert (community.support_required_pct, community.min_accept_quorum_pct, community.vote_time) == tuple(COMMUNITY)
        assert community.votes_length == 0


# ==========================================
# Finalize: permission graph
# ==========================================

EXPECTED_ROLES = [
    ("dao", Role.APP_MANAGER, ["council_voting"]),
    ("acl", Role.CREATE_PERMISSIONS, ["council_voting"]),
    ("script_registry", Role.REGISTRY_ADD_EXECUTOR, ["council_voting"]),
    ("script_registry", Role.REGISTRY_MANAGER, ["council_voting"]),
    ("agent", Role.EXECUTE, ["council_voting", "community_voting"]),
    ("agent", Role.RUN_SCRIPT, ["council_voting", "community_voting"]),
    ("agent", Role.TRANSFER, ["finance"]),
    ("finance", Role.CREATE_PAYMENTS, ["council_voting"]),
    ("finance", Role.EXECUTE_PAYMENTS, ["council_voting"]),
    ("finance", Role.MANAGE_PAYMENTS, ["council_voting"]),
    ("community_voting", Role.CREATE_VOTES, ["voting_aggregator"]),
    ("community_voting", Role.MODIFY_QUORUM, ["council_voting"]),
    ("community_voting", Role.MODIFY_SUPPORT, ["council_voting"]),
    ("council_voting", Role.CREATE_VOTES, ["council_token_manager"]),
    ("council_voting", Role.MODIFY_QUORUM, ["council_voting"]),
    ("council_voting", Role.MODIFY_SUPPORT, ["council_voting"]),
    ("council_token_manager", Role.MINT, ["community_voting"]),
    ("council_token_manager", Role.BURN, ["community_voting"]),
    ("token_wrapper", Role.INSTALL, ["any"]),
    ("voting_aggregator", Role.ADD_POWER_SOURCE, ["council_voting"]),
    ("voting_aggregator", Role.MANAGE_POWER_SOURCE, ["council_voting"]),
    ("voting_aggregator", Role.MANAGE_WEIGHTS, ["council_voting"]),
]


class TestPermissionGraph:
    @pytest.mark.parametrize("slot,role,grantees", EXPECTED_ROLES)
    def test_role(self, template, finalized, slot, role, grantees):
        apps = finalized.apps
        acl = template.acl_for(apps.dao.address)
        resource = getattr(apps, slot).address
        expected = {ANY_ENTITY if g == "any" else getattr(apps, g).address for g in grantees}
        assert acl.grantees(resource, role) == expected
        assert acl.get_permission_manager(resource, role) == apps.council_voting.address

    def test_intentionally_missing(self, template, finalized):
        apps = finalized.apps
        acl = template.acl_for(apps.dao.address)
        by_kind = {h.kind: h for h in apps.installed()}
        for kind, role in INTENTIONALLY_MISSING:
            assert acl.get_permission_manager(by_kind[kind].address, role) is None
            assert acl.grantees(by_kind[kind].address, role) == frozenset()
        assert len(finalized.audit["missing_roles"]) == len(INTENTIONALLY_MISSING)

    def test_every_role_managed_by_council(self, template, finalized):
        rows = template.acl_for(finalized.dao.address).dump()
        assert len(rows) == len(EXPECTED_ROLES) == finalized.audit["managed_roles"]
        assert {r["manager"] for r in rows} == {finalized.apps.council_voting.address}

    def test_no_template_residue(self, template, finalized):
        for row in template.acl_for(finalized.dao.address).dump():
            assert template.address not in row["grantees"]

    def test_component_does_not_accept_wrong_role(self, template, finalized):
        acl = template.acl_for(finalized.dao.address)
        council = finalized.apps.council_voting.address
        with pytest.raises(RoleNotOnResourceError):
            acl.create_permission(council, finalized.apps.finance, Role.MINT, council, sender=council)


# ==========================================
# Finalize: failure
# ==========================================

class TestFinalizeFailure:
    def test_failure_rolls_back_and_orphans(self, template, owner, members, prepared):
        events_before = len(template.substrate.events)
        with pytest.raises(ComponentError, match="FINANCE_SET_PERIOD_TOO_SHORT"):
            template.finalize_instance(owner, "doomed", COMMUNITY, members, COUNCIL, 3600)

        kernel = template.resolve(prepared.dao.address)
        assert app_id_for(ComponentKind.FINANCE) not in kernel.apps
        assert len(template.substrate.events) == events_before
        assert template.registrar.is_available("doomed")

        orphan = template.orphans[-1]
        assert orphan["reason"] == "finalize_failed"
        assert orphan["addresses"] == [h.address for h in prepared.cached.components()]

    def test_cache_consumed_after_failure(self, template, owner, members, prepared):
        with pytest.raises(ComponentError):
            template.finalize_instance(owner, "", COMMUNITY, members, [pct(10), pct(20), ONE_DAY])
        assert template.pending(owner) is None
        with pytest.raises(MissingCacheError):
            template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)

    def test_fresh_prepare_after_failure(self, template, owner, members, asset, prepared):
        with pytest.raises(ComponentError):
            template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL, 60)
        retry = prepare(template, owner, asset)
        assert retry.dao != prepared.dao
        result = template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)
        assert result.dao == retry.dao


# ==========================================
# Merged variant
# ==========================================

class TestCreateInstance:
    def test_same_graph_as_split_flow(self, template, owner, members, asset, finalized):
        merged = template.create_instance(
            owner, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT",
            "merged-org", COMMUNITY, members, COUNCIL,
        )
        assert graph_by_kind(template, merged.apps) == graph_by_kind(template, finalized.apps)
        assert template.registrar.resolve("merged-org") == merged.dao.address

    def test_receipt_covers_both_phases(self, template, owner, members, asset):
        result = template.create_instance(
            owner, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT",
            "", COMMUNITY, members, COUNCIL,
        )
        names = [e.name for e in result.receipt.events]
        assert names[0] == "DeployDao" and names[-1] == "SetupDao"
        assert len(result.receipt.installed_apps_by_kind()) == 6

    def test_does_not_touch_cache(self, template, owner, members, asset, prepared):
        template.create_instance(
            owner, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT",
            "", COMMUNITY, members, COUNCIL,
        )
        assert template.pending(owner) == prepared.cached

    def test_failure_leaves_nothing(self, template, owner, members, asset):
        events_before = len(template.substrate.events)
        with pytest.raises(ComponentError):
            template.create_instance(
                owner, asset, "Wrapped Mana", "wMANA", "Voting Token", "DVT",
                "", COMMUNITY, members, COUNCIL, 60,
            )
        assert len(template.substrate.events) == events_before
        assert template.orphans == []


# ==========================================
# Legacy single-phase variant
# ==========================================

class TestLegacy:
    def test_new_token(self, template, owner):
        result = template.new_token(owner, "Org Token", "ORG")
        assert result.receipt.event_arg("TokenCreated", "token") == result.token.address
        assert template.token_cache.peek(owner).token == result.token

    def test_new_token_last_writer_wins(self, template, owner):
        first = template.new_token(owner, "One", "ONE")
        second = template.new_token(owner, "Two", "TWO")
        assert template.token_cache.peek(owner).token == second.token
        assert template.orphans[-1]["addresses"] == [first.token.address]

    def test_instance_without_token(self, template, owner, asset):
        with pytest.raises(MissingCacheError):
            template.new_instance(owner, "legacy", asset, COMMUNITY)

    def test_instance_without_token_ignores_bad_id(self, template, owner, asset):
        with pytest.raises(MissingCacheError):
            template.new_instance(owner, "Not Valid", asset, COMMUNITY)

    def test_bad_asset_keeps_token(self, template, owner):
        created = template.new_token(owner, "Org Token", "ORG")
        with pytest.raises(BadExternalAssetError):
            template.new_instance(owner, "legacy", template.substrate.deploy_account(), COMMUNITY)
        assert template.token_cache.peek(owner).token == created.token
        assert template.orphans == []
        assert template.registrar.is_available("legacy")

    def test_instance_requires_id(self, template, owner, asset):
        template.new_token(owner, "Org Token", "ORG")
        with pytest.raises(InvalidIdError):
            template.new_instance(owner, "", asset, COMMUNITY)
        assert template.token_cache.has(owner)

    def test_authority_must_forward(self, template, owner, asset):
        template.new_token(owner, "Org Token", "ORG")
        with pytest.raises(BadMultisigOrAuthorityError, match="CHARTER_BAD_MULTISIG_OR_AUTHORITY"):
            template.new_instance(owner, "legacy", asset, COMMUNITY, template.substrate.deploy_account())
        with pytest.raises(BadMultisigOrAuthorityError):
            template.new_instance(owner, "legacy", asset, COMMUNITY, "0x" + "7" * 40)

    def test_voting_is_default_authority(self, template, owner, asset):
        template.new_token(owner, "Org Token", "ORG")
        result = template.new_instance(owner, "legacy", asset, COMMUNITY)
        acl = template.acl_for(result.dao.address)
        voting = result.apps.voting.address
        assert result.authority == voting
        assert acl.get_permission_manager(result.dao.address, Role.APP_MANAGER) == voting
        assert acl.grantees(voting, Role.CREATE_VOTES) == {ANY_ENTITY}
        assert acl.grantees(result.apps.agent.address, Role.EXECUTE) == {voting}
        assert template.registrar.resolve("legacy") == result.dao.address

    def test_multisig_authority(self, template, owner, asset, members):
        multisig = template.substrate.deploy_multisig(members, 2)
        template.new_token(owner, "Org Token", "ORG")
        result = template.new_instance(owner, "legacy-ms", asset, COMMUNITY, multisig)
        acl = template.acl_for(result.dao.address)
        assert result.authority == multisig
        assert {r["manager"] for r in acl.dump()} == {multisig}
        assert acl.grantees(result.apps.voting.address, Role.MODIFY_QUORUM) == {multisig}

    def test_wrapper_controls_org_token(self, template, owner, asset):
        created = template.new_token(owner, "Org Token", "ORG")
        result = template.new_instance(owner, "legacy", asset, COMMUNITY)
        token = template.resolve(created.token.address)
        wrapper = template.resolve(result.apps.token_wrapper.address)
        assert token.controller == wrapper.address
        assert wrapper.org_token == token.address
        assert (wrapper.name, wrapper.symbol) == ("Org Token", "ORG")
        assert template.resolve(result.apps.voting.address).token == token.address
        assert template.token_cache.peek(owner) is None


# ==========================================
# Pending-instance expiry
# ==========================================

class TestExpiry:
    def test_expired_instance_is_orphaned(self, owner, members):
        now = [0.0]
        template = OrganizationTemplate(cache_ttl_seconds=600, clock=lambda: now[0])
        asset = template.substrate.deploy_asset("Mana", "MANA", 18)
        prepared = prepare(template, owner, asset)
        now[0] += 601
        with pytest.raises(MissingCacheError):
            template.finalize_instance(owner, "", COMMUNITY, members, COUNCIL)
        assert template.orphans[-1]["reason"] == "expired"
        assert template.orphans[-1]["addresses"][0] == prepared.dao.address
