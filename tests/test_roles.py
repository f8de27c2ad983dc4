"""
Tests for the role hierarchy and tenant policy decisions.
"""
import pytest

from identity import Principal
from roles import Role, Action, MINIMUM_ROLE, has_min_role, required_role, role_rank
from tenant_policy import can_read, can_write, can_perform, is_admin


def _principal(role, organization_id='org-a'):
    return Principal(user_id='user-1', organization_id=organization_id, role=role)


class TestRoleOrder:
    """The four roles form a strict total order."""

    def test_order(self):
        assert Role.VIEWER < Role.MEMBER < Role.MANAGER < Role.ADMIN

    def test_parse_accepts_names_and_roles(self):
        assert Role.parse('admin') is Role.ADMIN
        assert Role.parse(' Viewer ') is Role.VIEWER
        assert Role.parse(Role.MANAGER) is Role.MANAGER

    @pytest.mark.parametrize('value', ['owner', '', None, 3])
    def test_parse_rejects_unknown(self, value):
        with pytest.raises(ValueError):
            Role.parse(value)

    def test_labels_match_stored_names(self):
        assert [role.label for role in Role] == ['viewer', 'member', 'manager', 'admin']

    def test_role_rank_accepts_strings(self):
        assert role_rank('manager') == role_rank(Role.MANAGER) == 2


class TestHasMinRole:
    @pytest.mark.parametrize('actual', list(Role))
    @pytest.mark.parametrize('required', list(Role))
    def test_matches_order(self, actual, required):
        assert has_min_role(actual, required) == (actual >= required)

    @pytest.mark.parametrize('action', list(Action))
    def test_monotonic_for_every_action(self, action):
        """Once a role may perform an action, every higher role may too."""
        allowed = [has_min_role(role, required_role(action)) for role in Role]
        first = allowed.index(True)
        assert all(allowed[first:])
        assert not any(allowed[:first])

    def test_every_action_has_a_minimum(self):
        assert set(MINIMUM_ROLE) == set(Action)

    def test_reading_is_open_to_viewers(self):
        assert required_role(Action.READ) == Role.VIEWER

    def test_org_settings_are_admin_only(self):
        assert required_role(Action.UPDATE_ORGANIZATION) == Role.ADMIN
        assert required_role(Action.DELETE_ORGANIZATION) == Role.ADMIN


class TestTenantPolicy:
    def test_can_read_own_organization_only(self):
        principal = _principal(Role.VIEWER)
        assert can_read(principal, 'org-a')
        assert not can_read(principal, 'org-b')
        assert not can_read(principal, None)
        assert not can_read(None, 'org-a')

    def test_can_write_needs_tenant_and_role(self):
        manager = _principal(Role.MANAGER)
        assert can_write(manager, 'org-a', Role.MANAGER)
        assert not can_write(manager, 'org-a', Role.ADMIN)
        assert not can_write(manager, 'org-b', Role.VIEWER)

    def test_admin_of_another_org_cannot_write(self):
        assert not can_perform(_principal(Role.ADMIN, 'org-b'), 'org-a', Action.MANAGE_DEPARTMENTS)

    def test_is_admin(self):
        assert is_admin(_principal(Role.ADMIN))
        assert not is_admin(_principal(Role.MANAGER))
        assert not is_admin(None)
