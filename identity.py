"""
Identity and role resolution.

A Principal is built from the stored user profile and nothing else. Callers
hand in the authenticated user_id; organization and role are always read back
from user_profiles, so a request can never claim a tenant or a role.
"""
import sqlite3
import secrets
from dataclasses import dataclass
from typing import Optional

import bcrypt

from db import get_db, PLAN_TIERS
from errors import Unauthenticated, Forbidden
from logging_config import get_logger, log_security_event
from roles import Role, Action, has_min_role, required_role

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    user_id: str
    organization_id: str
    role: Role

    def has_role(self, minimum: Role) -> bool:
        return has_min_role(self.role, minimum)


def hash_password(password: str) -> str:
    """Hash password with bcrypt (safe and slow)"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against bcrypt hash"""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except (ValueError, AttributeError):
        # Malformed hash
        return False


def resolve_principal(user_id: Optional[str]) -> Principal:
    """
    Build the Principal for an authenticated user id.

    Raises Unauthenticated when the id is empty, unknown, deactivated or not
    attached to an organization.
    """
    if not user_id:
        raise Unauthenticated()

    with get_db() as conn:
        row = conn.execute("""
            SELECT id, organization_id, role
            FROM user_profiles
            WHERE id = ? AND is_active = 1
        """, (user_id,)).fetchone()

    if not row or not row['organization_id']:
        log_security_event(logger, 'principal_unresolved', {'user_id': user_id})
        raise Unauthenticated()

    return Principal(
        user_id=row['id'],
        organization_id=row['organization_id'],
        role=Role.parse(row['role']),
    )


def authenticate(email: str, password: str) -> Optional[str]:
    """
    Check credentials and return the user id.
    Returns None if login fails.
    """
    if not email or not password:
        return None

    with get_db() as conn:
        user = conn.execute("""
            SELECT id, password_hash
            FROM user_profiles
            WHERE email = ? AND is_active = 1
        """, (email.strip().lower(),)).fetchone()

        if not user or not verify_password(password, user['password_hash']):
            log_security_event(logger, 'login_failed', {'email': email})
            return None

        conn.execute("""
            UPDATE user_profiles
            SET last_login = CURRENT_TIMESTAMP
            WHERE id = ?
        """, (user['id'],))

    logger.info("Login succeeded", extra={'extra_data': {'user_id': user['id']}})
    return user['id']


def _insert_profile(conn, organization_id: str, email: str, password: str,
                    full_name: str, role: Role) -> str:
    user_id = f"user-{secrets.token_urlsafe(8)}"
    try:
        conn.execute("""
            INSERT INTO user_profiles (id, organization_id, email, password_hash, full_name, role)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (user_id, organization_id, email.strip().lower(), hash_password(password),
              full_name, role.label))
    except sqlite3.IntegrityError:
        raise ValueError(f"Email '{email}' is already in use")
    return user_id


def signup(org_name: str, email: str, password: str, full_name: str,
           plan_tier: str = 'base') -> Principal:
    """
    Create an organization together with its first admin.

    Both rows are written in one transaction; a duplicate email leaves no
    orphaned organization behind.
    """
    if not org_name or not org_name.strip():
        raise ValueError("Organization name is required")
    if not email or not password or not full_name:
        raise ValueError("Email, password and name are required")
    if plan_tier not in PLAN_TIERS:
        raise ValueError(f"Unknown plan tier: {plan_tier!r}")

    organization_id = f"org-{secrets.token_urlsafe(8)}"

    with get_db() as conn:
        conn.execute("""
            INSERT INTO organizations (id, name, plan_tier)
            VALUES (?, ?, ?)
        """, (organization_id, org_name.strip(), plan_tier))
        user_id = _insert_profile(conn, organization_id, email, password, full_name, Role.ADMIN)

    logger.info("Organization created", extra={'extra_data': {
        'organization_id': organization_id,
        'user_id': user_id,
    }})
    return Principal(user_id=user_id, organization_id=organization_id, role=Role.ADMIN)


def invite_member(principal: Principal, email: str, full_name: str, role,
                  password: str) -> str:
    """Create a profile in the principal's own organization. Admin only."""
    if not principal.has_role(required_role(Action.MANAGE_MEMBERS)):
        log_security_event(logger, 'access_denied', {
            'action': Action.MANAGE_MEMBERS.value,
            'user_id': principal.user_id,
        })
        raise Forbidden()

    role = Role.parse(role)
    with get_db() as conn:
        user_id = _insert_profile(conn, principal.organization_id, email, password, full_name, role)

    # Imported here to avoid circular import
    from audit import log_action, AuditAction
    log_action(principal, AuditAction.MEMBER_INVITED, entity_type='user', entity_id=user_id,
               details=f"role={role.label}")
    return user_id


def change_password(principal: Principal, new_password: str):
    """Change the principal's own password"""
    if not new_password:
        raise ValueError("Password is required")
    password_hash = hash_password(new_password)

    with get_db() as conn:
        conn.execute("""
            UPDATE user_profiles
            SET password_hash = ?
            WHERE id = ?
        """, (password_hash, principal.user_id))
