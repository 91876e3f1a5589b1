from __future__ import annotations


class UbosError(Exception):
    """Base error for UBOS."""


class RoleNotFoundError(UbosError):
    """Role does not exist within the caller's organization."""


class DefaultRoleProtectedError(UbosError):
    """System default roles cannot be renamed, un-defaulted, or deleted."""


class RoleInUseError(UbosError):
    """Role is still assigned to at least one user."""


class TenantMismatchError(UbosError):
    """Role and assignment belong to different organizations."""


class UnknownPermissionError(UbosError):
    """Permission id or (feature_area, permission_type) pair is not in the catalog."""


class RateLimitStoreError(UbosError):
    """Rate limit counter storage failure."""
