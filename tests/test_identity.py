"""
Tests for identity: signup, login and principal resolution.
"""
import pytest

from db import get_db
from errors import Unauthenticated, Forbidden
from identity import (
    signup, authenticate, resolve_principal, invite_member, change_password,
    hash_password, verify_password,
)
from roles import Role
from tenant_store import TenantScope


def _org_count():
    with get_db() as conn:
        return conn.execute("SELECT COUNT(*) FROM organizations").fetchone()[0]


class TestPasswords:
    def test_hash_roundtrip(self):
        hashed = hash_password('correct horse')
        assert hashed != 'correct horse'
        assert verify_password('correct horse', hashed)
        assert not verify_password('wrong horse', hashed)

    def test_malformed_hash(self):
        assert not verify_password('anything', 'not-a-bcrypt-hash')


class TestSignup:
    def test_creates_org_and_admin(self):
        principal = signup('Acme Care', 'Owner@Acme.test', 'secret-pass', 'Olivia Owner')
        assert principal.role == Role.ADMIN
        assert principal.organization_id.startswith('org-')
        assert resolve_principal(principal.user_id) == principal

    def test_duplicate_email_leaves_no_orphan(self):
        signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        before = _org_count()
        with pytest.raises(ValueError, match='already in use'):
            signup('Second Org', 'OWNER@acme.test', 'other-pass', 'Someone Else')
        assert _org_count() == before

    @pytest.mark.parametrize('org_name', ['', '   '])
    def test_requires_org_name(self, org_name):
        with pytest.raises(ValueError):
            signup(org_name, 'a@b.test', 'pw', 'Name')

    def test_rejects_unknown_plan(self):
        with pytest.raises(ValueError, match='plan tier'):
            signup('Acme', 'a@b.test', 'pw', 'Name', plan_tier='platinum')


class TestAuthenticate:
    def test_valid_credentials(self):
        principal = signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        assert authenticate('owner@acme.test', 'secret-pass') == principal.user_id

    def test_email_is_case_insensitive(self):
        principal = signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        assert authenticate(' OWNER@acme.test ', 'secret-pass') == principal.user_id

    def test_wrong_password(self):
        signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        assert authenticate('owner@acme.test', 'nope') is None

    def test_unknown_email(self):
        assert authenticate('ghost@acme.test', 'secret-pass') is None

    def test_empty_credentials(self):
        assert authenticate('', '') is None

    def test_records_last_login(self):
        principal = signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        authenticate('owner@acme.test', 'secret-pass')
        with get_db() as conn:
            row = conn.execute("SELECT last_login FROM user_profiles WHERE id = ?",
                               (principal.user_id,)).fetchone()
        assert row['last_login'] is not None

    def test_change_password(self):
        principal = signup('Acme Care', 'owner@acme.test', 'secret-pass', 'Olivia Owner')
        change_password(principal, 'new-secret')
        assert authenticate('owner@acme.test', 'secret-pass') is None
        assert authenticate('owner@acme.test', 'new-secret') == principal.user_id


class TestResolvePrincipal:
    @pytest.mark.parametrize('user_id', [None, '', 'user-unknown'])
    def test_unresolvable(self, user_id):
        with pytest.raises(Unauthenticated):
            resolve_principal(user_id)

    def test_role_comes_from_store(self, tenant):
        """A role change is visible on the next resolution."""
        member = tenant.as_role(Role.MEMBER)
        TenantScope(tenant.admin).set_member_role(member.user_id, 'manager')
        assert resolve_principal(member.user_id).role == Role.MANAGER

    def test_offboarded_member_cannot_resolve(self, tenant):
        member = tenant.as_role(Role.MEMBER)
        TenantScope(tenant.admin).offboard_member(member.user_id)
        with pytest.raises(Unauthenticated):
            resolve_principal(member.user_id)


class TestInviteMember:
    def test_admin_invites_into_own_org(self, tenant):
        user_id = invite_member(tenant.admin, 'new@acme.test', 'New Person', 'member', 'pw-123456')
        principal = resolve_principal(user_id)
        assert principal.organization_id == tenant.organization_id
        assert principal.role == Role.MEMBER

    @pytest.mark.parametrize('role', [Role.VIEWER, Role.MEMBER, Role.MANAGER])
    def test_non_admin_cannot_invite(self, tenant, role):
        with pytest.raises(Forbidden):
            invite_member(tenant.as_role(role), 'new@acme.test', 'New Person', 'viewer', 'pw')

    def test_unknown_role(self, tenant):
        with pytest.raises(ValueError):
            invite_member(tenant.admin, 'new@acme.test', 'New Person', 'owner', 'pw')
