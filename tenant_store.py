"""
Tenant-scoped data access.

TenantScope is constructed per request with an explicit Principal and is the
only path to tenant-owned rows. Every query it issues is pinned to
principal.organization_id:

- reads of another tenant's rows return nothing (get_* raises NotFound)
- writes below the required role raise Forbidden
- updates and deletes aimed at another tenant's rows affect 0 rows
- inserts naming another organization raise Forbidden
"""
from contextlib import contextmanager
from typing import Optional, Dict, List
import secrets

from db import get_db, snapshot, ASSESSMENT_STATUSES, QUESTIONNAIRE_STATUSES, QUESTION_TYPES, \
    RISK_CATEGORIES, PLAN_TIERS
from errors import Unauthenticated, Forbidden, NotFound, InvalidTransition, ConfirmationRequired
from audit import log_action, AuditAction
from logging_config import get_logger, log_security_event
from roles import Role, Action, required_role, has_min_role
from tenant_policy import can_read

logger = get_logger(__name__)


# Assessment lifecycle
ALLOWED_TRANSITIONS = {
    'draft': ('active',),
    'active': ('completed', 'archived'),
    'completed': ('archived',),
    'archived': (),
}

ORGANIZATION_FIELDS = ('name', 'industry', 'size', 'plan_tier')
DEPARTMENT_FIELDS = ('name', 'description', 'parent_id')
QUESTIONNAIRE_FIELDS = ('title', 'description', 'status')
ASSESSMENT_FIELDS = ('title', 'start_date', 'end_date')
MEMBER_COLUMNS = "id, organization_id, email, full_name, role, is_active, created_at, last_login"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_urlsafe(8)}"


@contextmanager
def _connection(conn=None):
    """Reuse an open connection (e.g. a snapshot) or open a new one."""
    if conn is not None:
        yield conn
    else:
        with get_db() as own:
            yield own


class TenantScope:
    def __init__(self, principal):
        if principal is None:
            raise Unauthenticated()
        self.principal = principal

    @property
    def organization_id(self) -> str:
        return self.principal.organization_id

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _require(self, action: Action):
        """Explicit rejection when the principal's role is below the action's minimum."""
        minimum = required_role(action)
        if not has_min_role(self.principal.role, minimum):
            log_security_event(logger, 'access_denied', {
                'action': action.value,
                'user_id': self.principal.user_id,
                'role': self.principal.role.label,
                'required_role': minimum.label,
            })
            raise Forbidden()

    def _require_own_org(self, organization_id: Optional[str]):
        """Inserts may not name another organization."""
        if organization_id is not None and organization_id != self.organization_id:
            log_security_event(logger, 'cross-tenant insert rejected', {
                'user_id': self.principal.user_id,
                'organization_id': self.organization_id,
            })
            raise Forbidden()

    def _update(self, table: str, row_id: str, fields: Dict, allowed, conn=None) -> int:
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            raise ValueError(f"No updatable fields given for {table}")

        set_clause = ", ".join(f"{key} = ?" for key in updates)
        with _connection(conn) as c:
            cursor = c.execute(f"""
                UPDATE {table}
                SET {set_clause}, updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND organization_id = ?
            """, (*updates.values(), row_id, self.organization_id))
        return cursor.rowcount

    def _delete(self, table: str, row_id: str, conn=None) -> int:
        with _connection(conn) as c:
            cursor = c.execute(
                f"DELETE FROM {table} WHERE id = ? AND organization_id = ?",
                (row_id, self.organization_id)
            )
        return cursor.rowcount

    def _get(self, table: str, row_id: str, conn=None) -> Dict:
        with _connection(conn) as c:
            row = c.execute(
                f"SELECT * FROM {table} WHERE id = ? AND organization_id = ?",
                (row_id, self.organization_id)
            ).fetchone()
        if not row or not can_read(self.principal, row['organization_id']):
            raise NotFound()
        return dict(row)

    # ------------------------------------------------------------------
    # Organization
    # ------------------------------------------------------------------

    def get_organization(self) -> Dict:
        with get_db() as conn:
            row = conn.execute(
                "SELECT * FROM organizations WHERE id = ?",
                (self.organization_id,)
            ).fetchone()
        if not row:
            raise NotFound()
        return dict(row)

    def update_organization(self, **fields) -> int:
        """Update settings of the principal's own organization. Admin only."""
        self._require(Action.UPDATE_ORGANIZATION)

        updates = {k: v for k, v in fields.items() if k in ORGANIZATION_FIELDS}
        if not updates:
            raise ValueError("No updatable fields given for organizations")
        if 'plan_tier' in updates and updates['plan_tier'] not in PLAN_TIERS:
            raise ValueError(f"Unknown plan tier: {updates['plan_tier']!r}")
        if 'name' in updates and not (updates['name'] or '').strip():
            raise ValueError("Organization name is required")

        set_clause = ", ".join(f"{key} = ?" for key in updates)
        with get_db() as conn:
            cursor = conn.execute(f"""
                UPDATE organizations
                SET {set_clause}, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (*updates.values(), self.organization_id))
            if cursor.rowcount:
                log_action(self.principal, AuditAction.ORGANIZATION_UPDATED,
                           entity_type='organization', entity_id=self.organization_id,
                           details=", ".join(sorted(updates)), conn=conn)
        return cursor.rowcount

    def delete_organization(self, confirm_name: str) -> int:
        """
        Delete the principal's organization and everything it owns.

        The caller must repeat the organization name exactly. The audit entry
        is written in the same transaction, before the cascade runs.
        """
        self._require(Action.DELETE_ORGANIZATION)

        with get_db() as conn:
            org = conn.execute(
                "SELECT id, name FROM organizations WHERE id = ?",
                (self.organization_id,)
            ).fetchone()
            if not org:
                return 0
            if confirm_name != org['name']:
                raise ConfirmationRequired()

            log_action(self.principal, AuditAction.ORGANIZATION_DELETED,
                       entity_type='organization', entity_id=org['id'],
                       details=f"name={org['name']}", conn=conn)
            cursor = conn.execute("DELETE FROM organizations WHERE id = ?", (org['id'],))

        log_security_event(logger, 'organization_deleted', {
            'organization_id': self.organization_id,
            'user_id': self.principal.user_id,
        })
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Departments
    # ------------------------------------------------------------------

    def list_departments(self, conn=None) -> List[Dict]:
        with _connection(conn) as conn:
            rows = conn.execute("""
                SELECT * FROM departments
                WHERE organization_id = ?
                ORDER BY name
            """, (self.organization_id,)).fetchall()
        return [dict(row) for row in rows]

    def get_department(self, department_id: str, conn=None) -> Dict:
        return self._get('departments', department_id, conn=conn)

    def create_department(self, name: str, description: str = None,
                          parent_id: str = None, organization_id: str = None) -> str:
        self._require(Action.MANAGE_DEPARTMENTS)
        self._require_own_org(organization_id)
        if not name or not name.strip():
            raise ValueError("Department name is required")

        department_id = _new_id('dept')
        with get_db() as conn:
            if parent_id:
                self.get_department(parent_id, conn=conn)
            conn.execute("""
                INSERT INTO departments (id, organization_id, name, description, parent_id)
                VALUES (?, ?, ?, ?, ?)
            """, (department_id, self.organization_id, name.strip(), description, parent_id))
            log_action(self.principal, AuditAction.DEPARTMENT_CREATED,
                       entity_type='department', entity_id=department_id, conn=conn)
        return department_id

    def update_department(self, department_id: str, **fields) -> int:
        self._require(Action.MANAGE_DEPARTMENTS)
        with get_db() as conn:
            parent_id = fields.get('parent_id')
            if parent_id:
                self.get_department(parent_id, conn=conn)
                if self._is_descendant(conn, parent_id, department_id):
                    raise ValueError("A department cannot be nested under itself")
            count = self._update('departments', department_id, fields, DEPARTMENT_FIELDS, conn=conn)
            if count:
                log_action(self.principal, AuditAction.DEPARTMENT_UPDATED,
                           entity_type='department', entity_id=department_id, conn=conn)
        return count

    def _is_descendant(self, conn, department_id: str, ancestor_id: str) -> bool:
        """True if ancestor_id is department_id or one of its parents."""
        seen = set()
        current = department_id
        while current and current not in seen:
            if current == ancestor_id:
                return True
            seen.add(current)
            row = conn.execute(
                "SELECT parent_id FROM departments WHERE id = ? AND organization_id = ?",
                (current, self.organization_id)
            ).fetchone()
            current = row['parent_id'] if row else None
        return False

    def delete_department(self, department_id: str) -> int:
        self._require(Action.MANAGE_DEPARTMENTS)
        with get_db() as conn:
            count = self._delete('departments', department_id, conn=conn)
            if count:
                log_action(self.principal, AuditAction.DEPARTMENT_DELETED,
                           entity_type='department', entity_id=department_id, conn=conn)
        return count

    # ------------------------------------------------------------------
    # Questionnaires and questions
    # ------------------------------------------------------------------

    def list_questionnaires(self) -> List[Dict]:
        with get_db() as conn:
            rows = conn.execute("""
                SELECT * FROM questionnaires
                WHERE organization_id = ?
                ORDER BY created_at DESC, title
            """, (self.organization_id,)).fetchall()
        return [dict(row) for row in rows]

    def get_questionnaire(self, questionnaire_id: str, conn=None) -> Dict:
        return self._get('questionnaires', questionnaire_id, conn=conn)

    def create_questionnaire(self, title: str, description: str = None,
                             status: str = 'draft', organization_id: str = None) -> str:
        self._require(Action.MANAGE_QUESTIONNAIRES)
        self._require_own_org(organization_id)
        if not title or not title.strip():
            raise ValueError("Questionnaire title is required")
        if status not in QUESTIONNAIRE_STATUSES:
            raise ValueError(f"Unknown questionnaire status: {status!r}")

        questionnaire_id = _new_id('qn')
        with get_db() as conn:
            conn.execute("""
                INSERT INTO questionnaires (id, organization_id, title, description, status, created_by)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (questionnaire_id, self.organization_id, title.strip(), description, status,
                  self.principal.user_id))
            log_action(self.principal, AuditAction.QUESTIONNAIRE_CREATED,
                       entity_type='questionnaire', entity_id=questionnaire_id, conn=conn)
        return questionnaire_id

    def update_questionnaire(self, questionnaire_id: str, **fields) -> int:
        self._require(Action.MANAGE_QUESTIONNAIRES)
        if 'status' in fields and fields['status'] not in QUESTIONNAIRE_STATUSES:
            raise ValueError(f"Unknown questionnaire status: {fields['status']!r}")
        with get_db() as conn:
            count = self._update('questionnaires', questionnaire_id, fields, QUESTIONNAIRE_FIELDS, conn=conn)
            if count:
                log_action(self.principal, AuditAction.QUESTIONNAIRE_UPDATED,
                           entity_type='questionnaire', entity_id=questionnaire_id, conn=conn)
        return count

    def delete_questionnaire(self, questionnaire_id: str) -> int:
        self._require(Action.MANAGE_QUESTIONNAIRES)
        with get_db() as conn:
            count = self._delete('questionnaires', questionnaire_id, conn=conn)
            if count:
                log_action(self.principal, AuditAction.QUESTIONNAIRE_DELETED,
                           entity_type='questionnaire', entity_id=questionnaire_id, conn=conn)
        return count

    def list_questions(self, questionnaire_id: str) -> List[Dict]:
        with get_db() as conn:
            rows = conn.execute("""
                SELECT q.*
                FROM questions q
                JOIN questionnaires qn ON q.questionnaire_id = qn.id
                WHERE q.questionnaire_id = ? AND qn.organization_id = ?
                ORDER BY q.order_index, q.id
            """, (questionnaire_id, self.organization_id)).fetchall()
        return [dict(row) for row in rows]

    def add_question(self, questionnaire_id: str, text: str, question_type: str = 'likert_scale',
                     category: str = None, risk_inverted: bool = True, min_value: int = 1,
                     max_value: int = 5, order_index: int = None, is_required: bool = True) -> str:
        self._require(Action.MANAGE_QUESTIONNAIRES)
        if not text or not text.strip():
            raise ValueError("Question text is required")
        if question_type not in QUESTION_TYPES:
            raise ValueError(f"Unknown question type: {question_type!r}")
        if category is not None and category not in RISK_CATEGORIES:
            raise ValueError(f"Unknown category: {category!r}")
        if min_value >= max_value:
            raise ValueError("min_value must be below max_value")

        question_id = _new_id('q')
        with get_db() as conn:
            self.get_questionnaire(questionnaire_id, conn=conn)
            if order_index is None:
                order_index = conn.execute(
                    "SELECT COALESCE(MAX(order_index), 0) + 1 FROM questions WHERE questionnaire_id = ?",
                    (questionnaire_id,)
                ).fetchone()[0]
            conn.execute("""
                INSERT INTO questions
                (id, questionnaire_id, text, question_type, category, risk_inverted,
                 min_value, max_value, order_index, is_required)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (question_id, questionnaire_id, text.strip(), question_type, category,
                  1 if risk_inverted else 0, min_value, max_value, order_index,
                  1 if is_required else 0))
            log_action(self.principal, AuditAction.QUESTION_ADDED,
                       entity_type='question', entity_id=question_id,
                       details=f"questionnaire={questionnaire_id}", conn=conn)
        return question_id

    def delete_question(self, question_id: str) -> int:
        self._require(Action.MANAGE_QUESTIONNAIRES)
        with get_db() as conn:
            cursor = conn.execute("""
                DELETE FROM questions
                WHERE id = ? AND questionnaire_id IN (
                    SELECT id FROM questionnaires WHERE organization_id = ?
                )
            """, (question_id, self.organization_id))
            if cursor.rowcount:
                log_action(self.principal, AuditAction.QUESTION_DELETED,
                           entity_type='question', entity_id=question_id, conn=conn)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def list_assessments(self, status: str = None) -> List[Dict]:
        query = "SELECT * FROM assessments WHERE organization_id = ?"
        params = [self.organization_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, title"

        with get_db() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_assessment(self, assessment_id: str, conn=None) -> Dict:
        return self._get('assessments', assessment_id, conn=conn)

    def create_assessment(self, questionnaire_id: str, title: str, department_id: str = None,
                          start_date: str = None, end_date: str = None,
                          organization_id: str = None) -> str:
        """Create a draft assessment. Questionnaire and department must be our own."""
        self._require(Action.MANAGE_ASSESSMENTS)
        self._require_own_org(organization_id)
        if not title or not title.strip():
            raise ValueError("Assessment title is required")

        assessment_id = _new_id('assess')
        with get_db() as conn:
            self.get_questionnaire(questionnaire_id, conn=conn)
            if department_id:
                self.get_department(department_id, conn=conn)
            conn.execute("""
                INSERT INTO assessments
                (id, organization_id, questionnaire_id, department_id, title, status,
                 start_date, end_date, created_by)
                VALUES (?, ?, ?, ?, ?, 'draft', ?, ?, ?)
            """, (assessment_id, self.organization_id, questionnaire_id, department_id,
                  title.strip(), start_date, end_date, self.principal.user_id))
            log_action(self.principal, AuditAction.ASSESSMENT_CREATED,
                       entity_type='assessment', entity_id=assessment_id, conn=conn)
        return assessment_id

    def update_assessment(self, assessment_id: str, **fields) -> int:
        self._require(Action.MANAGE_ASSESSMENTS)
        with get_db() as conn:
            count = self._update('assessments', assessment_id, fields, ASSESSMENT_FIELDS, conn=conn)
            if count:
                log_action(self.principal, AuditAction.ASSESSMENT_UPDATED,
                           entity_type='assessment', entity_id=assessment_id, conn=conn)
        return count

    def set_assessment_status(self, assessment_id: str, new_status: str) -> int:
        """
        Move an assessment through its lifecycle.

        draft -> active -> completed -> archived; active may also be archived
        directly. Returns 0 when the assessment is not ours.
        """
        self._require(Action.MANAGE_ASSESSMENTS)
        if new_status not in ASSESSMENT_STATUSES:
            raise InvalidTransition(f"Unknown status: {new_status}")

        with get_db() as conn:
            row = conn.execute(
                "SELECT status FROM assessments WHERE id = ? AND organization_id = ?",
                (assessment_id, self.organization_id)
            ).fetchone()
            if not row:
                return 0

            current = row['status']
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(f"Cannot change status from {current} to {new_status}")

            cursor = conn.execute("""
                UPDATE assessments
                SET status = ?,
                    start_date = CASE WHEN ? = 'active' THEN COALESCE(start_date, CURRENT_TIMESTAMP) ELSE start_date END,
                    end_date = CASE WHEN ? = 'completed' THEN COALESCE(end_date, CURRENT_TIMESTAMP) ELSE end_date END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND organization_id = ? AND status = ?
            """, (new_status, new_status, new_status, assessment_id, self.organization_id, current))

            if cursor.rowcount:
                log_action(self.principal, AuditAction.ASSESSMENT_STATUS_CHANGED,
                           entity_type='assessment', entity_id=assessment_id,
                           details=f"{current} -> {new_status}", conn=conn)
        return cursor.rowcount

    def delete_assessment(self, assessment_id: str) -> int:
        self._require(Action.MANAGE_ASSESSMENTS)
        with get_db() as conn:
            count = self._delete('assessments', assessment_id, conn=conn)
            if count:
                log_action(self.principal, AuditAction.ASSESSMENT_DELETED,
                           entity_type='assessment', entity_id=assessment_id, conn=conn)
        return count

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def response_rows(self, assessment_id: str, conn, department_id: str = None,
                      category: str = None) -> List:
        """
        Answer rows of one of our assessments joined with their question.

        Read on the caller's connection so counts and values computed from the
        result come from the same snapshot. Rows of other tenants' assessments
        never match the join.
        """
        query = """
            SELECT r.anonymous_id, r.department_id, r.value, r.created_at,
                   q.id AS question_id, q.text AS question_text, q.question_type,
                   q.category, q.risk_inverted, q.min_value, q.max_value, q.order_index
            FROM responses r
            JOIN assessments a ON r.assessment_id = a.id
            JOIN questions q ON r.question_id = q.id
            WHERE r.assessment_id = ? AND a.organization_id = ?
        """
        params = [assessment_id, self.organization_id]
        if department_id:
            query += " AND r.department_id = ?"
            params.append(department_id)
        if category:
            query += " AND q.category = ?"
            params.append(category)
        query += " ORDER BY q.order_index, q.id, r.id"

        return conn.execute(query, params).fetchall()

    def count_participants(self, assessment_id: str) -> int:
        """Distinct respondents of one of our assessments."""
        with get_db() as conn:
            self.get_assessment(assessment_id, conn=conn)
            return conn.execute("""
                SELECT COUNT(DISTINCT anonymous_id) FROM responses WHERE assessment_id = ?
            """, (assessment_id,)).fetchone()[0]

    def detailed_responses(self, assessment_id: str, thresholds=None) -> Dict:
        """
        Individual answers of an assessment, without respondent tokens or times.

        Only released once the number of distinct participants reaches the
        detailed_responses threshold; below it only the count and the number
        of missing responses are returned.
        """
        # Imported here to avoid circular import
        from config import get_thresholds
        from suppression import suppression_status

        thresholds = thresholds or get_thresholds()
        self._require(Action.READ)

        with snapshot() as conn:
            self.get_assessment(assessment_id, conn=conn)
            rows = self.response_rows(assessment_id, conn)

        sample_count = len({row['anonymous_id'] for row in rows})
        status = suppression_status(sample_count, 'detailed_responses', thresholds)
        result = status.as_dict()
        if status.suppressed:
            result['responses'] = []
            return result

        answers = [{
            'question_id': row['question_id'],
            'question_text': row['question_text'],
            'category': row['category'],
            'value': row['value'],
        } for row in rows]
        # Stable order by question, then value; insertion order would leak sequence
        answers.sort(key=lambda a: (a['question_id'], str(a['value'])))
        result['responses'] = answers

        log_action(self.principal, AuditAction.DETAILED_RESPONSES_READ,
                   entity_type='assessment', entity_id=assessment_id)
        return result

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def list_members(self) -> List[Dict]:
        with get_db() as conn:
            rows = conn.execute(f"""
                SELECT {MEMBER_COLUMNS}
                FROM user_profiles
                WHERE organization_id = ?
                ORDER BY full_name
            """, (self.organization_id,)).fetchall()
        return [dict(row) for row in rows]

    def _active_admin_count(self, conn) -> int:
        return conn.execute("""
            SELECT COUNT(*) FROM user_profiles
            WHERE organization_id = ? AND role = 'admin' AND is_active = 1
        """, (self.organization_id,)).fetchone()[0]

    def _guard_last_admin(self, conn, user_id: str):
        target = conn.execute("""
            SELECT role, is_active FROM user_profiles
            WHERE id = ? AND organization_id = ?
        """, (user_id, self.organization_id)).fetchone()
        if target and target['role'] == 'admin' and target['is_active'] and \
                self._active_admin_count(conn) <= 1:
            log_security_event(logger, 'last admin removal rejected', {
                'organization_id': self.organization_id,
                'user_id': self.principal.user_id,
            })
            raise Forbidden()

    def set_member_role(self, user_id: str, role) -> int:
        """Change a member's role. Admin only; the last admin cannot be demoted."""
        self._require(Action.MANAGE_MEMBERS)
        role = Role.parse(role)

        with get_db() as conn:
            if role != Role.ADMIN:
                self._guard_last_admin(conn, user_id)
            cursor = conn.execute("""
                UPDATE user_profiles
                SET role = ?
                WHERE id = ? AND organization_id = ?
            """, (role.label, user_id, self.organization_id))
            if cursor.rowcount:
                log_action(self.principal, AuditAction.ROLE_CHANGED, entity_type='user',
                           entity_id=user_id, details=f"role={role.label}", conn=conn)
        return cursor.rowcount

    def offboard_member(self, user_id: str) -> int:
        """Deactivate a member. The profile row stays for the audit trail."""
        self._require(Action.MANAGE_MEMBERS)

        with get_db() as conn:
            self._guard_last_admin(conn, user_id)
            cursor = conn.execute("""
                UPDATE user_profiles
                SET is_active = 0
                WHERE id = ? AND organization_id = ? AND is_active = 1
            """, (user_id, self.organization_id))
            if cursor.rowcount:
                log_action(self.principal, AuditAction.MEMBER_OFFBOARDED, entity_type='user',
                           entity_id=user_id, conn=conn)
        return cursor.rowcount
