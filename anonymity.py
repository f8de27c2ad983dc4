"""
Structural checks that responses cannot be linked to a user.

Runs against the live schema, so a migration that adds an identity column to
responses, or a side table keyed by anonymous_id, is caught by the test suite
and by verify_security.py.
"""
from typing import List

from db import get_db

RESPONSES_TABLE = 'responses'
PROFILES_TABLE = 'user_profiles'

# Columns that identify a person
IDENTITY_COLUMNS = {
    'user_id', 'profile_id', 'user_profile_id', 'respondent_id', 'email',
    'full_name', 'username', 'ip_address', 'user_agent', 'session_id',
}


def _tables(conn) -> List[str]:
    rows = conn.execute("""
        SELECT name FROM sqlite_master
        WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
        ORDER BY name
    """).fetchall()
    return [row['name'] for row in rows]


def _columns(conn, table: str) -> List[str]:
    return [row['name'] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()]


def _foreign_key_targets(conn, table: str) -> List[str]:
    return [row['table'] for row in conn.execute(f"PRAGMA foreign_key_list({table})").fetchall()]


def identity_link_violations(conn) -> List[str]:
    """
    Every way the schema lets a response row reach a person.

    Returns an empty list when responses are structurally anonymous.
    """
    violations = []
    tables = _tables(conn)

    if RESPONSES_TABLE not in tables:
        return [f"table '{RESPONSES_TABLE}' is missing"]

    for column in _columns(conn, RESPONSES_TABLE):
        if column.lower() in IDENTITY_COLUMNS:
            violations.append(f"{RESPONSES_TABLE}.{column} identifies a person")

    if PROFILES_TABLE in _foreign_key_targets(conn, RESPONSES_TABLE):
        violations.append(f"{RESPONSES_TABLE} has a foreign key to {PROFILES_TABLE}")

    for table in tables:
        if table == RESPONSES_TABLE:
            continue

        columns = {column.lower() for column in _columns(conn, table)}
        targets = _foreign_key_targets(conn, table)

        if 'anonymous_id' in columns:
            violations.append(f"{table}.anonymous_id stores respondent tokens outside {RESPONSES_TABLE}")

        if RESPONSES_TABLE in targets:
            if columns & IDENTITY_COLUMNS or PROFILES_TABLE in targets:
                violations.append(f"{table} joins {RESPONSES_TABLE} to an identity")

    return violations


def correlated_identity_rows(conn) -> int:
    """Responses whose token equals a profile id or email. Must be zero."""
    return conn.execute(f"""
        SELECT COUNT(*)
        FROM {RESPONSES_TABLE} r
        JOIN {PROFILES_TABLE} p
          ON r.anonymous_id = p.id OR lower(r.anonymous_id) = lower(p.email)
    """).fetchone()[0]


def check_anonymity() -> List[str]:
    """Run both checks on the configured database."""
    with get_db() as conn:
        problems = identity_link_violations(conn)
        linked = correlated_identity_rows(conn)
    if linked:
        problems.append(f"{linked} response(s) correlate with a user profile")
    return problems
