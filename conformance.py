"""
Policy conformance harness.

Each scenario runs provision -> act -> check -> teardown against the
configured database. Checks raise ScenarioFailure through expect() and never
rely on assert statements. Teardown always runs, also when provisioning or a
check fails, so organizations created by one scenario never leak into the
next.

A blocked write is accepted in either form: an explicit permission error or a
write that affected zero rows. Scenarios assert on the observable effect (the
target row is unchanged) rather than on which form was used.
"""
import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any

from aggregation import aggregate, AggregationScope
from anonymity import identity_link_violations, correlated_identity_rows
from audit import get_audit_logs
from config import BUCKET_TYPES, SuppressionThresholds
from db import get_db
from errors import SollarError, Forbidden, NotFound, Unauthenticated, ConfirmationRequired
from identity import Principal, signup, invite_member
from ingestion import submit_response
from logging_config import get_logger
from roles import Role, Action, has_min_role, required_role
from tenant_policy import can_read, can_write
from tenant_store import TenantScope

logger = get_logger(__name__)

# Errors that mean "not permitted"
PERMISSION_ERRORS = (Forbidden, NotFound, Unauthenticated)

DEFAULT_QUESTIONS = (
    ('I have enough time to finish my work', 'demands_and_pace', False),
    ('I am often under pressure to work faster', 'demands_and_pace', True),
    ('My manager recognizes my work', 'leadership_recognition', False),
)


# ========================================
# OUTCOMES
# ========================================

@dataclass
class WriteOutcome:
    rows: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def blocked(self) -> bool:
        return self.error is not None or self.rows == 0

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.rows)


def attempt_write(fn: Callable, *args, **kwargs) -> WriteOutcome:
    """
    Run a write and record how it ended.

    Update and delete calls return a row count; inserts return the new id,
    which counts as one row. Only permission errors are captured; anything
    else is a defect and propagates.
    """
    try:
        result = fn(*args, **kwargs)
    except PERMISSION_ERRORS as e:
        return WriteOutcome(error=e)

    if isinstance(result, int) and not isinstance(result, bool):
        return WriteOutcome(rows=result)
    return WriteOutcome(rows=1 if result is not None else 0)


class ScenarioFailure(Exception):
    """A scenario check did not hold."""


def expect(condition, message: str):
    if not condition:
        raise ScenarioFailure(message)


@dataclass
class ScenarioResult:
    name: str
    passed: bool
    detail: str = ''


# ========================================
# FIXTURES
# ========================================

@dataclass
class Tenant:
    organization_id: str
    name: str
    principals: Dict[Role, Principal] = field(default_factory=dict)

    def as_role(self, role) -> Principal:
        return self.principals[Role.parse(role)]

    @property
    def admin(self) -> Principal:
        return self.principals[Role.ADMIN]

    def scope(self, role=Role.ADMIN) -> TenantScope:
        return TenantScope(self.as_role(role))


@dataclass
class Fixtures:
    tenants: List[Tenant] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def teardown(self):
        """Tear down every tenant, then re-raise the first failure."""
        first_error = None
        for tenant in self.tenants:
            try:
                teardown_organization(tenant)
            except SollarError as e:
                first_error = first_error or e
        self.tenants = []
        if first_error is not None:
            raise first_error


def _token(length: int = 8) -> str:
    return secrets.token_urlsafe(length)


def new_anonymous_id() -> str:
    """A respondent token as the survey front end would generate it."""
    return secrets.token_urlsafe(24)


def provision_organization(fixtures: Fixtures, name: str = None,
                           roles=(Role.MANAGER, Role.MEMBER, Role.VIEWER)) -> Tenant:
    """Organization with an admin plus one principal per extra role."""
    name = name or f"Conformance {_token(4)}"
    suffix = _token(6).lower()
    admin = signup(name, f"admin-{suffix}@example.test", _token(16), "Conformance Admin")

    tenant = Tenant(organization_id=admin.organization_id, name=name)
    tenant.principals[Role.ADMIN] = admin
    fixtures.tenants.append(tenant)

    for role in roles:
        role = Role.parse(role)
        user_id = invite_member(admin, f"{role.label}-{suffix}@example.test",
                                f"Conformance {role.label.title()}", role, _token(16))
        tenant.principals[role] = Principal(user_id=user_id, organization_id=tenant.organization_id,
                                            role=role)
    return tenant


def provision_department(tenant: Tenant, name: str = 'Operations') -> str:
    return tenant.scope().create_department(name)


def provision_questionnaire(tenant: Tenant, title: str = 'Psychosocial risk survey',
                            questions=DEFAULT_QUESTIONS):
    """Returns (questionnaire_id, [question_id, ...])"""
    scope = tenant.scope()
    questionnaire_id = scope.create_questionnaire(title, status='published')
    question_ids = [
        scope.add_question(questionnaire_id, text, category=category, risk_inverted=inverted)
        for text, category, inverted in questions
    ]
    return questionnaire_id, question_ids


def provision_assessment(tenant: Tenant, questionnaire_id: str, department_id: str = None,
                         title: str = 'Assessment', activate: bool = True) -> str:
    scope = tenant.scope()
    assessment_id = scope.create_assessment(questionnaire_id, title, department_id=department_id)
    if activate:
        scope.set_assessment_status(assessment_id, 'active')
    return assessment_id


def provision_responses(assessment_id: str, question_ids, count: int, value=3,
                        department_id: str = None) -> List[str]:
    """Submit `count` anonymous sessions answering every question with `value`."""
    anonymous_ids = []
    for _ in range(count):
        anonymous_id = new_anonymous_id()
        for question_id in question_ids:
            submit_response(assessment_id, question_id, anonymous_id, value,
                            department_id=department_id)
        anonymous_ids.append(anonymous_id)
    return anonymous_ids


def teardown_organization(tenant: Tenant):
    """Delete the organization through its admin; a no-op if already gone."""
    scope = tenant.scope()
    try:
        current_name = scope.get_organization()['name']
    except NotFound:
        return
    try:
        scope.delete_organization(confirm_name=current_name)
    except SollarError as e:
        logger.error(f"Teardown failed for {tenant.organization_id}", extra={'extra_data': {
            'organization_id': tenant.organization_id,
            'error': str(e),
        }})
        raise


def _provision_pair(fixtures: Fixtures):
    """Two organizations with a department, questionnaire and active assessment each."""
    for key in ('a', 'b'):
        tenant = provision_organization(fixtures)
        department_id = provision_department(tenant)
        questionnaire_id, question_ids = provision_questionnaire(tenant)
        assessment_id = provision_assessment(tenant, questionnaire_id, department_id=department_id)
        fixtures.data[key] = {
            'tenant': tenant,
            'department_id': department_id,
            'questionnaire_id': questionnaire_id,
            'question_ids': question_ids,
            'assessment_id': assessment_id,
        }


def _row(table: str, row_id: str) -> Optional[Dict]:
    """Fixture inspection outside any tenant scope."""
    with get_db() as conn:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
    return dict(row) if row else None


# ========================================
# SCENARIOS
# ========================================

@dataclass
class Scenario:
    name: str
    provision: Callable[[Fixtures], None]
    act: Callable[[Fixtures], Any]
    check: Callable[[Fixtures, Any], None]


def run_scenario(scenario: Scenario) -> ScenarioResult:
    fixtures = Fixtures()
    result = None
    try:
        scenario.provision(fixtures)
        outcome = scenario.act(fixtures)
        scenario.check(fixtures, outcome)
        result = ScenarioResult(scenario.name, True)
    except ScenarioFailure as e:
        result = ScenarioResult(scenario.name, False, str(e) or 'check failed')
    except SollarError as e:
        result = ScenarioResult(scenario.name, False, f"{type(e).__name__}: {e}")
    finally:
        try:
            fixtures.teardown()
        except SollarError as e:
            result = ScenarioResult(scenario.name, False, f"teardown failed: {e}")

    logger.info(f"Scenario {scenario.name}: {'passed' if result.passed else 'failed'}",
                extra={'extra_data': {'scenario': scenario.name, 'detail': result.detail}})
    return result


# --- tenant isolation ---

def _act_cross_tenant_reads(fixtures):
    a, b = fixtures.data['a'], fixtures.data['b']
    outcomes = {}
    for role in Role:
        scope = a['tenant'].scope(role)
        seen = set()
        seen.update(row['organization_id'] for row in scope.list_departments())
        seen.update(row['organization_id'] for row in scope.list_questionnaires())
        seen.update(row['organization_id'] for row in scope.list_assessments())
        seen.update(row['organization_id'] for row in scope.list_members())
        foreign_questions = scope.list_questions(b['questionnaire_id'])

        hidden = []
        for getter, row_id in ((scope.get_department, b['department_id']),
                               (scope.get_questionnaire, b['questionnaire_id']),
                               (scope.get_assessment, b['assessment_id'])):
            try:
                getter(row_id)
            except NotFound:
                hidden.append(row_id)

        aggregates = aggregate(scope.principal, AggregationScope(b['assessment_id']), 'assessment')
        outcomes[role] = (seen, foreign_questions, hidden, aggregates)
    return outcomes


def _check_cross_tenant_reads(fixtures, outcomes):
    a, b = fixtures.data['a'], fixtures.data['b']
    b_org = b['tenant'].organization_id
    for role, (seen, foreign_questions, hidden, aggregates) in outcomes.items():
        expect(b_org not in seen, f"{role.label} saw rows of another organization")
        expect(seen == {a['tenant'].organization_id}, f"{role.label} did not see own rows")
        expect(foreign_questions == [], f"{role.label} listed another organization's questions")
        expect(len(hidden) == 3, f"{role.label} could fetch another organization's rows")
        expect(aggregates == [], f"{role.label} aggregated another organization's assessment")
        expect(not can_read(a['tenant'].as_role(role), b_org), f"{role.label} may read another organization")


def _act_same_title(fixtures):
    a, b = fixtures.data['a'], fixtures.data['b']
    a.scope().create_questionnaire('Climate survey 2026')
    b.scope().create_questionnaire('Climate survey 2026')
    return [q for q in a.scope().list_questionnaires() if q['title'] == 'Climate survey 2026']


def _provision_same_title(fixtures):
    fixtures.data['a'] = provision_organization(fixtures, roles=())
    fixtures.data['b'] = provision_organization(fixtures, roles=())


def _check_same_title(fixtures, listed):
    expect(len(listed) == 1, f"expected exactly 1 questionnaire, got {len(listed)}")
    expect(listed[0]['organization_id'] == fixtures.data['a'].organization_id, "questionnaire listed under the wrong organization")


def _act_cross_tenant_writes(fixtures):
    a, b = fixtures.data['a'], fixtures.data['b']
    scope = a['tenant'].scope(Role.ADMIN)
    b_org = b['tenant'].organization_id
    return {
        'update department': attempt_write(scope.update_department, b['department_id'], name='Taken'),
        'delete department': attempt_write(scope.delete_department, b['department_id']),
        'update questionnaire': attempt_write(scope.update_questionnaire, b['questionnaire_id'],
                                              title='Taken'),
        'delete questionnaire': attempt_write(scope.delete_questionnaire, b['questionnaire_id']),
        'add question': attempt_write(scope.add_question, b['questionnaire_id'], 'Injected'),
        'delete question': attempt_write(scope.delete_question, b['question_ids'][0]),
        'update assessment': attempt_write(scope.update_assessment, b['assessment_id'], title='Taken'),
        'change status': attempt_write(scope.set_assessment_status, b['assessment_id'], 'completed'),
        'delete assessment': attempt_write(scope.delete_assessment, b['assessment_id']),
        'change member role': attempt_write(scope.set_member_role,
                                            b['tenant'].as_role(Role.VIEWER).user_id, 'admin'),
        'offboard member': attempt_write(scope.offboard_member,
                                         b['tenant'].as_role(Role.VIEWER).user_id),
        'insert department': attempt_write(scope.create_department, 'Foreign', organization_id=b_org),
        'insert questionnaire': attempt_write(scope.create_questionnaire, 'Foreign',
                                              organization_id=b_org),
        'insert assessment on foreign questionnaire': attempt_write(
            scope.create_assessment, b['questionnaire_id'], 'Foreign'),
    }


def _check_cross_tenant_writes(fixtures, outcomes):
    b = fixtures.data['b']
    for label, outcome in outcomes.items():
        expect(outcome.blocked, f"{label} was not blocked")

    department = _row('departments', b['department_id'])
    questionnaire = _row('questionnaires', b['questionnaire_id'])
    assessment = _row('assessments', b['assessment_id'])
    viewer = _row('user_profiles', b['tenant'].as_role(Role.VIEWER).user_id)
    expect(department and department['name'] == 'Operations', "department changed")
    expect(questionnaire and questionnaire['title'] == 'Psychosocial risk survey', "questionnaire changed")
    expect(assessment and assessment['status'] == 'active', "assessment changed")
    expect(assessment['title'] == 'Assessment', "assessment changed")
    expect(_row('questions', b['question_ids'][0]), "question deleted")
    expect(viewer['role'] == 'viewer' and viewer['is_active'] == 1, "member changed")

    with get_db() as conn:
        foreign = conn.execute(
            "SELECT COUNT(*) FROM departments WHERE organization_id = ? AND name = 'Foreign'",
            (b['tenant'].organization_id,)
        ).fetchone()[0]
    expect(foreign == 0, "row inserted into another organization")


# --- role hierarchy ---

def _provision_single(fixtures):
    tenant = provision_organization(fixtures)
    questionnaire_id, question_ids = provision_questionnaire(tenant)
    fixtures.data['tenant'] = tenant
    fixtures.data['questionnaire_id'] = questionnaire_id
    fixtures.data['assessment_id'] = provision_assessment(tenant, questionnaire_id, activate=False)


def _act_viewer_vs_admin_org_update(fixtures):
    tenant = fixtures.data['tenant']
    viewer = attempt_write(tenant.scope(Role.VIEWER).update_organization, name='X')
    after_viewer = _row('organizations', tenant.organization_id)['name']
    admin = attempt_write(tenant.scope(Role.ADMIN).update_organization, name='X')
    return viewer, after_viewer, admin


def _check_viewer_vs_admin_org_update(fixtures, outcome):
    viewer, after_viewer, admin = outcome
    expect(viewer.blocked, "viewer updated organization settings")
    expect(after_viewer == fixtures.data['tenant'].name, "organization name changed by viewer")
    expect(admin.rows == 1, f"admin update affected {admin.rows} rows")
    expect(_row('organizations', fixtures.data['tenant'].organization_id)['name'] == 'X', "admin update was not stored")


def _write_for(action: Action, scope: TenantScope, fixtures) -> Callable[[], Any]:
    tenant = fixtures.data['tenant']
    if action == Action.READ:
        return lambda: len(scope.list_assessments()) or 1
    if action == Action.MANAGE_DEPARTMENTS:
        return lambda: scope.create_department(f"Dept {_token(4)}")
    if action == Action.MANAGE_QUESTIONNAIRES:
        return lambda: scope.create_questionnaire(f"Questionnaire {_token(4)}")
    if action == Action.MANAGE_ASSESSMENTS:
        return lambda: scope.update_assessment(fixtures.data['assessment_id'], title=_token(4))
    if action == Action.UPDATE_ORGANIZATION:
        return lambda: scope.update_organization(industry=_token(4))
    if action == Action.MANAGE_MEMBERS:
        member_id = tenant.as_role(Role.MEMBER).user_id
        return lambda: scope.set_member_role(member_id, 'member')
    if action == Action.READ_AUDIT_LOG:
        return lambda: len(get_audit_logs(scope.principal)) or 1
    if action == Action.DELETE_ORGANIZATION:
        # Wrong confirmation: the role check runs first, nothing is deleted
        def delete_with_wrong_name():
            try:
                scope.delete_organization(confirm_name='wrong name')
            except ConfirmationRequired:
                return 1
            return 0
        return delete_with_wrong_name
    raise ValueError(f"No probe for {action}")


def _act_role_monotonicity(fixtures):
    tenant = fixtures.data['tenant']
    results = {}
    for action in Action:
        for role in Role:
            probe = _write_for(action, tenant.scope(role), fixtures)
            results[(action, role)] = attempt_write(probe)
    return results


def _check_role_monotonicity(fixtures, results):
    tenant = fixtures.data['tenant']
    for (action, role), outcome in results.items():
        allowed = has_min_role(role, required_role(action))
        expect(allowed == can_write(tenant.as_role(role), tenant.organization_id, required_role(action)),
               f"policy and role table disagree for {role.label} on {action.value}")
        if allowed:
            expect(outcome.succeeded, f"{role.label} was blocked from {action.value}")
        else:
            expect(outcome.blocked, f"{role.label} performed {action.value}")


def _act_last_admin(fixtures):
    tenant = fixtures.data['tenant']
    scope = tenant.scope(Role.ADMIN)
    return (
        attempt_write(scope.set_member_role, tenant.admin.user_id, 'manager'),
        attempt_write(scope.offboard_member, tenant.admin.user_id),
    )


def _check_last_admin(fixtures, outcomes):
    for outcome in outcomes:
        expect(outcome.blocked, "last admin was removed")
    admin = _row('user_profiles', fixtures.data['tenant'].admin.user_id)
    expect(admin['role'] == 'admin' and admin['is_active'] == 1, "last admin changed")


# --- anonymity ---

def _provision_with_responses(fixtures):
    _provision_single(fixtures)
    tenant = fixtures.data['tenant']
    tenant.scope().set_assessment_status(fixtures.data['assessment_id'], 'active')
    question_ids = [q['id'] for q in tenant.scope().list_questions(fixtures.data['questionnaire_id'])]
    fixtures.data['question_ids'] = question_ids
    provision_responses(fixtures.data['assessment_id'], question_ids, 3)


def _act_non_linkage(fixtures):
    with get_db() as conn:
        return identity_link_violations(conn), correlated_identity_rows(conn)


def _check_non_linkage(fixtures, outcome):
    violations, correlated = outcome
    expect(violations == [], "; ".join(violations))
    expect(correlated == 0, f"{correlated} responses correlate with a user profile")


def _act_duplicate_submission(fixtures):
    assessment_id = fixtures.data['assessment_id']
    question_id = fixtures.data['question_ids'][0]
    anonymous_id = new_anonymous_id()
    first = submit_response(assessment_id, question_id, anonymous_id, 2)
    second = submit_response(assessment_id, question_id, anonymous_id, 5)
    with get_db() as conn:
        rows = conn.execute("""
            SELECT value FROM responses
            WHERE assessment_id = ? AND question_id = ? AND anonymous_id = ?
        """, (assessment_id, question_id, anonymous_id)).fetchall()
    return first, second, [row['value'] for row in rows]


def _check_duplicate_submission(fixtures, outcome):
    first, second, values = outcome
    expect(first == second, "acknowledgement reveals a previous submission")
    expect(values == ['5'], f"expected the latest value only, got {values}")


# --- suppression ---

def _provision_department_bucket(fixtures):
    tenant = provision_organization(fixtures, roles=(Role.VIEWER,))
    department_id = provision_department(tenant, 'Support')
    questionnaire_id, question_ids = provision_questionnaire(
        tenant, questions=(('My workload is too high', 'demands_and_pace', True),)
    )
    fixtures.data.update({
        'tenant': tenant,
        'department_id': department_id,
        'questionnaire_id': questionnaire_id,
        'question_ids': question_ids,
        'assessment_id': provision_assessment(tenant, questionnaire_id, department_id=department_id),
    })


def _act_department_threshold(fixtures):
    data = fixtures.data
    thresholds = SuppressionThresholds()
    scope = AggregationScope(data['assessment_id'], department_id=data['department_id'],
                             category='demands_and_pace')
    viewer = data['tenant'].as_role(Role.VIEWER)

    provision_responses(data['assessment_id'], data['question_ids'], 4, value=4)
    before = aggregate(viewer, scope, 'department', thresholds=thresholds)
    provision_responses(data['assessment_id'], data['question_ids'], 1, value=4)
    after = aggregate(viewer, scope, 'department', thresholds=thresholds)
    return before, after


def _check_department_threshold(fixtures, outcome):
    before, after = outcome
    expect(len(before) == 1 and len(after) == 1, "expected exactly one department bucket")
    expect(before[0].suppressed and before[0].remaining == 1, "4 of 5 should be suppressed")
    expect(before[0].value is None, "suppressed bucket carried a value")
    expect(not after[0].suppressed and after[0].sample_count == 5, "5 of 5 should be visible")
    expect(after[0].value == 4.0, f"expected average 4.0, got {after[0].value}")


def _act_threshold_exactness(fixtures):
    data = fixtures.data
    tenant = data['tenant']
    viewer = tenant.as_role(Role.VIEWER)
    thresholds = SuppressionThresholds()
    results = {}
    for bucket_type in BUCKET_TYPES:
        # Fresh assessment per bucket type so counts start at zero
        threshold = thresholds.for_bucket(bucket_type)
        assessment_id = provision_assessment(tenant, data['questionnaire_id'],
                                             department_id=data['department_id'],
                                             title=f"Exactness {bucket_type}")
        scope = AggregationScope(assessment_id)

        provision_responses(assessment_id, data['question_ids'], threshold - 1)
        below = aggregate(viewer, scope, bucket_type, thresholds=thresholds)
        provision_responses(assessment_id, data['question_ids'], 1)
        at = aggregate(viewer, scope, bucket_type, thresholds=thresholds)
        results[bucket_type] = (threshold, below, at)
    return results


def _check_threshold_exactness(fixtures, results):
    for bucket_type, (threshold, below, at) in results.items():
        expect(below and all(s.suppressed and s.remaining == 1 for s in below),
               f"{bucket_type}: {threshold - 1} respondents should be suppressed")
        expect(at and all(not s.suppressed for s in at),
               f"{bucket_type}: {threshold} respondents should be visible")


SCENARIOS = [
    Scenario('cross-tenant reads return nothing', _provision_pair,
             _act_cross_tenant_reads, _check_cross_tenant_reads),
    Scenario('same-title questionnaires stay separate', _provision_same_title,
             _act_same_title, _check_same_title),
    Scenario('cross-tenant writes are blocked', _provision_pair,
             _act_cross_tenant_writes, _check_cross_tenant_writes),
    Scenario('viewer cannot update organization, admin can', _provision_single,
             _act_viewer_vs_admin_org_update, _check_viewer_vs_admin_org_update),
    Scenario('role hierarchy is monotonic', _provision_single,
             _act_role_monotonicity, _check_role_monotonicity),
    Scenario('last admin cannot be removed', _provision_single,
             _act_last_admin, _check_last_admin),
    Scenario('responses cannot be linked to users', _provision_with_responses,
             _act_non_linkage, _check_non_linkage),
    Scenario('duplicate submissions are indistinguishable', _provision_with_responses,
             _act_duplicate_submission, _check_duplicate_submission),
    Scenario('department bucket unlocks at its threshold', _provision_department_bucket,
             _act_department_threshold, _check_department_threshold),
    Scenario('thresholds are inclusive for every bucket type', _provision_department_bucket,
             _act_threshold_exactness, _check_threshold_exactness),
]


def run_all(scenarios: List[Scenario] = None) -> List[ScenarioResult]:
    return [run_scenario(scenario) for scenario in (scenarios or SCENARIOS)]
