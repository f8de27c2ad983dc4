"""
Audit logging system for Sollar.
Logs membership, lifecycle and organization changes for security and compliance.

Every entry is written with an explicit principal; nothing is read from the
session here. Entries are scoped to the principal's organization and only
admins of that organization can read them.
"""
from typing import Optional

from flask import has_request_context, request

from db import get_db
from errors import Forbidden
from logging_config import get_logger
from roles import Action, has_min_role, required_role

logger = get_logger(__name__)


def init_audit_tables():
    """Create audit log table if it doesn't exist."""
    with get_db() as conn:
        # No foreign key to organizations: the record of a deletion must
        # survive the cascade it describes.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL DEFAULT (datetime('now')),
                user_id TEXT,
                organization_id TEXT,
                role TEXT,
                action TEXT NOT NULL,
                entity_type TEXT,
                entity_id TEXT,
                details TEXT,
                ip_address TEXT
            )
        """)

        # Index for efficient querying
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_timestamp
            ON audit_log(timestamp DESC)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_organization
            ON audit_log(organization_id)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_action
            ON audit_log(action)
        """)


# Action categories
class AuditAction:
    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGOUT = "logout"

    # Member management
    MEMBER_INVITED = "member_invited"
    ROLE_CHANGED = "role_changed"
    MEMBER_OFFBOARDED = "member_offboarded"

    # Organization management
    ORGANIZATION_CREATED = "organization_created"
    ORGANIZATION_UPDATED = "organization_updated"
    ORGANIZATION_DELETED = "organization_deleted"

    # Departments
    DEPARTMENT_CREATED = "department_created"
    DEPARTMENT_UPDATED = "department_updated"
    DEPARTMENT_DELETED = "department_deleted"

    # Questionnaires
    QUESTIONNAIRE_CREATED = "questionnaire_created"
    QUESTIONNAIRE_UPDATED = "questionnaire_updated"
    QUESTIONNAIRE_DELETED = "questionnaire_deleted"
    QUESTION_ADDED = "question_added"
    QUESTION_DELETED = "question_deleted"

    # Assessment management
    ASSESSMENT_CREATED = "assessment_created"
    ASSESSMENT_UPDATED = "assessment_updated"
    ASSESSMENT_STATUS_CHANGED = "assessment_status_changed"
    ASSESSMENT_DELETED = "assessment_deleted"

    # Data access
    DETAILED_RESPONSES_READ = "detailed_responses_read"


def _client_ip() -> Optional[str]:
    if not has_request_context():
        return None
    ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
    if ip_address and ',' in ip_address:
        ip_address = ip_address.split(',')[0].strip()
    return ip_address


def _insert(conn, principal, action, entity_type, entity_id, details):
    conn.execute("""
        INSERT INTO audit_log
        (user_id, organization_id, role, action, entity_type, entity_id, details, ip_address)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (principal.user_id, principal.organization_id, principal.role.label, action,
          entity_type, entity_id, details, _client_ip()))


def log_action(principal, action: str, entity_type: str = None, entity_id: str = None,
               details: str = None, conn=None):
    """
    Log an audit event.

    Args:
        principal: The acting Principal
        action: The action being performed (use AuditAction constants)
        entity_type: Type of entity affected (organization, department, assessment, ...)
        entity_id: ID of the affected entity
        details: Additional details about the action
        conn: Write inside an open transaction. Failures then propagate and
              abort the surrounding change.
    """
    if conn is not None:
        _insert(conn, principal, action, entity_type, entity_id, details)
        return

    try:
        with get_db() as own_conn:
            _insert(own_conn, principal, action, entity_type, entity_id, details)
    except Exception as e:
        # Don't let audit logging failures break the application
        logger.error(f"Failed to write audit entry {action}", extra={'extra_data': {
            'action': action,
            'error': str(e),
        }})


def get_audit_logs(principal, limit: int = 100, offset: int = 0, action: str = None,
                   start_date: str = None, end_date: str = None) -> list:
    """
    Retrieve the audit trail of the principal's organization.

    Args:
        principal: Must be an admin
        limit: Maximum number of records to return
        offset: Number of records to skip
        action: Filter by action type
        start_date: Filter by start date (YYYY-MM-DD)
        end_date: Filter by end date (YYYY-MM-DD)

    Returns:
        List of audit log entries, newest first
    """
    if not has_min_role(principal.role, required_role(Action.READ_AUDIT_LOG)):
        raise Forbidden()

    query = "SELECT * FROM audit_log WHERE organization_id = ?"
    params = [principal.organization_id]

    if action:
        query += " AND action = ?"
        params.append(action)

    if start_date:
        query += " AND timestamp >= ?"
        params.append(f"{start_date} 00:00:00")

    if end_date:
        query += " AND timestamp <= ?"
        params.append(f"{end_date} 23:59:59")

    query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    with get_db() as conn:
        rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]
