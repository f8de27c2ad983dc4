"""
Tenant isolation decisions.

Pure functions over a Principal and the organization that owns a resource.
They never touch the store; TenantScope applies them to every query.
"""
from typing import Optional

from roles import Role, Action, has_min_role, required_role


def can_read(principal, resource_org_id: Optional[str]) -> bool:
    """Any role may read rows owned by its own organization."""
    if principal is None or not resource_org_id:
        return False
    return principal.organization_id == resource_org_id


def can_write(principal, resource_org_id: Optional[str], minimum) -> bool:
    """Same organization and at least the given role."""
    if not can_read(principal, resource_org_id):
        return False
    return has_min_role(principal.role, minimum)


def can_perform(principal, resource_org_id: Optional[str], action: Action) -> bool:
    return can_write(principal, resource_org_id, required_role(action))


def is_admin(principal) -> bool:
    return principal is not None and principal.role == Role.ADMIN
