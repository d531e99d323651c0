"""
Charter Errors
==============
Failure taxonomy for the organization template.

Every error carries a stable `reason` string. `str(err)` is the reason, so
callers (and tests) can match on it literally.
"""


class TemplateError(Exception):
    """Base class for template rejections."""

    reason = "CHARTER_ERROR"

    def __init__(self, reason: str = None):
        self.reason = reason or self.reason
        super().__init__(self.reason)


class BadExternalAssetError(TemplateError):
    reason = "CHARTER_BAD_EXTERNAL_TOKEN"


class MissingCacheError(TemplateError):
    reason = "CHARTER_MISSING_CACHE"


class InvalidIdError(TemplateError):
    reason = "CHARTER_INVALID_ID"


class MissingCouncilMembersError(TemplateError):
    reason = "CHARTER_MISSING_COUNCIL_MEMBERS"


class BadMultisigOrAuthorityError(TemplateError):
    reason = "CHARTER_BAD_MULTISIG_OR_AUTHORITY"


class InvalidVotingSettingsError(TemplateError):
    reason = "CHARTER_BAD_VOTING_SETTINGS"


class NameTakenError(TemplateError):
    """Raised by the name registrar when a label is already claimed."""
    reason = "REGISTRAR_NAME_TAKEN"


# ==========================================
# ACL
# ==========================================

class ACLError(TemplateError):
    reason = "ACL_ERROR"


class ExistentPermissionError(ACLError):
    reason = "ACL_EXISTENT_PERMISSION"


class NoPermissionError(ACLError):
    reason = "ACL_NO_PERMISSION"


class RoleNotOnResourceError(ACLError):
    reason = "ACL_ROLE_NOT_ON_RESOURCE"


class PermissionGraphError(ACLError):
    """Raised by the post-wiring audit (unmanaged role, wrong manager)."""
    reason = "ACL_UNMANAGED_ROLE"


# ==========================================
# Components
# ==========================================

class ComponentError(TemplateError):
    """Failure raised by an installed component itself."""
    reason = "COMPONENT_ERROR"
