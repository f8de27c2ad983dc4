"""
Tests for tenant isolation in TenantScope.

Reads of another organization's rows return nothing, writes aimed at them
affect zero rows, and inserts naming another organization are rejected.
"""
import pytest

from aggregation import aggregate, AggregationScope
from audit import get_audit_logs, AuditAction
from db import get_db
from errors import Unauthenticated, Forbidden, NotFound, ConfirmationRequired
from roles import Role
from tenant_store import TenantScope


def _row(table, row_id):
    with get_db() as conn:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
    return dict(row) if row else None


class TestScopeConstruction:
    def test_requires_principal(self):
        with pytest.raises(Unauthenticated):
            TenantScope(None)


class TestSameTitle:
    def test_same_title_questionnaires_stay_separate(self, tenant, other_tenant):
        tenant.scope().create_questionnaire('Climate survey 2026')
        other_tenant.scope().create_questionnaire('Climate survey 2026')

        listed = [q for q in tenant.scope().list_questionnaires()
                  if q['title'] == 'Climate survey 2026']
        assert len(listed) == 1
        assert listed[0]['organization_id'] == tenant.organization_id


class TestCrossTenantReads:
    @pytest.mark.parametrize('role', list(Role))
    def test_lists_contain_only_own_rows(self, survey, other_survey, role):
        scope = survey['tenant'].scope(role)
        own = survey['tenant'].organization_id
        for rows in (scope.list_departments(), scope.list_questionnaires(),
                     scope.list_assessments(), scope.list_members()):
            assert rows
            assert {row['organization_id'] for row in rows} == {own}

    def test_get_foreign_rows_is_not_found(self, survey, other_survey):
        scope = survey['tenant'].scope(Role.ADMIN)
        with pytest.raises(NotFound):
            scope.get_department(other_survey['department_id'])
        with pytest.raises(NotFound):
            scope.get_questionnaire(other_survey['questionnaire_id'])
        with pytest.raises(NotFound):
            scope.get_assessment(other_survey['assessment_id'])

    def test_foreign_questions_list_is_empty(self, survey, other_survey):
        assert survey['tenant'].scope().list_questions(other_survey['questionnaire_id']) == []

    def test_foreign_aggregate_is_empty(self, survey, other_survey):
        viewer = survey['tenant'].as_role(Role.VIEWER)
        assert aggregate(viewer, AggregationScope(other_survey['assessment_id'])) == []

    def test_foreign_participant_count_is_not_found(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().count_participants(other_survey['assessment_id'])

    def test_foreign_detailed_responses_is_not_found(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().detailed_responses(other_survey['assessment_id'])


class TestCrossTenantWrites:
    def test_update_foreign_department_affects_nothing(self, survey, other_survey):
        count = survey['tenant'].scope().update_department(other_survey['department_id'], name='Taken')
        assert count == 0
        assert _row('departments', other_survey['department_id'])['name'] == 'Support'

    def test_delete_foreign_assessment_affects_nothing(self, survey, other_survey):
        assert survey['tenant'].scope().delete_assessment(other_survey['assessment_id']) == 0
        assert _row('assessments', other_survey['assessment_id']) is not None

    def test_foreign_status_change_affects_nothing(self, survey, other_survey):
        count = survey['tenant'].scope().set_assessment_status(other_survey['assessment_id'], 'completed')
        assert count == 0
        assert _row('assessments', other_survey['assessment_id'])['status'] == 'active'

    def test_delete_foreign_question_affects_nothing(self, survey, other_survey):
        question_id = other_survey['question_ids'][0]
        assert survey['tenant'].scope().delete_question(question_id) == 0
        assert _row('questions', question_id) is not None

    def test_foreign_member_role_change_affects_nothing(self, tenant, other_tenant):
        target = other_tenant.as_role(Role.VIEWER)
        assert tenant.scope().set_member_role(target.user_id, 'admin') == 0
        assert tenant.scope().offboard_member(target.user_id) == 0
        row = _row('user_profiles', target.user_id)
        assert row['role'] == 'viewer'
        assert row['is_active'] == 1

    def test_insert_naming_foreign_org_is_forbidden(self, tenant, other_tenant):
        with pytest.raises(Forbidden):
            tenant.scope().create_department('Foreign', organization_id=other_tenant.organization_id)
        with pytest.raises(Forbidden):
            tenant.scope().create_questionnaire('Foreign', organization_id=other_tenant.organization_id)
        assert other_tenant.scope().list_departments() == []

    def test_assessment_on_foreign_questionnaire(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().create_assessment(other_survey['questionnaire_id'], 'Borrowed')

    def test_assessment_for_foreign_department(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().create_assessment(
                survey['questionnaire_id'], 'Borrowed', department_id=other_survey['department_id'])

    def test_question_on_foreign_questionnaire(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().add_question(other_survey['questionnaire_id'], 'Injected')

    def test_foreign_parent_department(self, survey, other_survey):
        with pytest.raises(NotFound):
            survey['tenant'].scope().create_department('Child', parent_id=other_survey['department_id'])


class TestDepartmentHierarchy:
    def test_self_parent_is_rejected(self, tenant):
        scope = tenant.scope()
        department_id = scope.create_department('Support')
        with pytest.raises(ValueError):
            scope.update_department(department_id, parent_id=department_id)

    def test_two_step_cycle_is_rejected(self, tenant):
        scope = tenant.scope()
        first = scope.create_department('Support')
        second = scope.create_department('Second line')
        assert scope.update_department(first, parent_id=second) == 1
        with pytest.raises(ValueError):
            scope.update_department(second, parent_id=first)
        assert _row('departments', second)['parent_id'] is None

    def test_deep_cycle_is_rejected(self, tenant):
        scope = tenant.scope()
        top = scope.create_department('Operations')
        middle = scope.create_department('Support', parent_id=top)
        bottom = scope.create_department('Second line', parent_id=middle)
        with pytest.raises(ValueError):
            scope.update_department(top, parent_id=bottom)

    def test_moving_to_a_sibling_branch(self, tenant):
        scope = tenant.scope()
        top = scope.create_department('Operations')
        left = scope.create_department('Support', parent_id=top)
        right = scope.create_department('Sales', parent_id=top)
        assert scope.update_department(right, parent_id=left) == 1

class TestOrganizationDeletion:
    def test_requires_matching_name(self, tenant):
        with pytest.raises(ConfirmationRequired):
            tenant.scope().delete_organization(confirm_name='acme care')
        assert _row('organizations', tenant.organization_id) is not None

    def test_cascades_own_data_only(self, survey, other_survey):
        tenant = survey['tenant']
        assert tenant.scope().delete_organization(confirm_name=tenant.name) == 1

        assert _row('organizations', tenant.organization_id) is None
        assert _row('assessments', survey['assessment_id']) is None
        assert _row('departments', survey['department_id']) is None
        assert _row('user_profiles', tenant.admin.user_id) is None

        assert _row('assessments', other_survey['assessment_id']) is not None
        assert other_survey['tenant'].scope().list_members()

    def test_deletion_is_audited(self, tenant):
        tenant.scope().delete_organization(confirm_name=tenant.name)
        entries = get_audit_logs(tenant.admin, action=AuditAction.ORGANIZATION_DELETED)
        assert len(entries) == 1
        assert entries[0]['entity_id'] == tenant.organization_id

    def test_already_deleted(self, tenant):
        tenant.scope().delete_organization(confirm_name=tenant.name)
        assert tenant.scope().delete_organization(confirm_name=tenant.name) == 0
