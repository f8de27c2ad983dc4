"""
Tenant API blueprint - organization, departments, questionnaires, assessments, members.

Every route resolves the Principal from the session and works through a
TenantScope for it. organization_id and role in request bodies are never
used to decide access.

Routes:
- GET    /api/organization - Own organization
- PATCH  /api/organization - Update settings (admin)
- DELETE /api/organization - Delete with name confirmation (admin)
- GET    /api/departments, POST /api/departments
- PATCH  /api/departments/<id>, DELETE /api/departments/<id>
- GET    /api/questionnaires, POST /api/questionnaires
- GET/PATCH/DELETE /api/questionnaires/<id>
- GET    /api/questionnaires/<id>/questions, POST /api/questionnaires/<id>/questions
- DELETE /api/questions/<id>
- GET    /api/assessments, POST /api/assessments
- GET/PATCH/DELETE /api/assessments/<id>
- POST   /api/assessments/<id>/status - Lifecycle change
- GET    /api/members, POST /api/members (admin)
- PATCH  /api/members/<id> - Change role (admin)
- DELETE /api/members/<id> - Offboard (admin)
- GET    /api/audit-log (admin)
"""

from flask import Blueprint, jsonify, request, g

from auth_helpers import principal_required, role_required
from audit import get_audit_logs
from errors import NotFound
from identity import invite_member
from roles import Action
from tenant_store import TenantScope

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _payload():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _scope():
    return TenantScope(g.principal)


def _affected(count: int, key: str = 'updated'):
    """Zero affected rows is reported exactly like a missing row."""
    if not count:
        raise NotFound()
    return jsonify({key: count})


# ========================================
# ORGANIZATION
# ========================================

@api_bp.route('/organization', methods=['GET'])
@principal_required
def get_organization():
    return jsonify(_scope().get_organization())


@api_bp.route('/organization', methods=['PATCH'])
@principal_required
def update_organization():
    return _affected(_scope().update_organization(**_payload()))


@api_bp.route('/organization', methods=['DELETE'])
@principal_required
@role_required(Action.DELETE_ORGANIZATION)
def delete_organization():
    count = _scope().delete_organization(_payload().get('confirm_name'))
    return _affected(count, key='deleted')


# ========================================
# DEPARTMENTS
# ========================================

@api_bp.route('/departments', methods=['GET'])
@principal_required
def list_departments():
    return jsonify({'data': _scope().list_departments()})


@api_bp.route('/departments', methods=['POST'])
@principal_required
def create_department():
    data = _payload()
    department_id = _scope().create_department(
        name=data.get('name', ''),
        description=data.get('description'),
        parent_id=data.get('parent_id'),
        organization_id=data.get('organization_id'),
    )
    return jsonify({'id': department_id}), 201


@api_bp.route('/departments/<department_id>', methods=['PATCH'])
@principal_required
def update_department(department_id):
    return _affected(_scope().update_department(department_id, **_payload()))


@api_bp.route('/departments/<department_id>', methods=['DELETE'])
@principal_required
def delete_department(department_id):
    return _affected(_scope().delete_department(department_id), key='deleted')


# ========================================
# QUESTIONNAIRES AND QUESTIONS
# ========================================

@api_bp.route('/questionnaires', methods=['GET'])
@principal_required
def list_questionnaires():
    return jsonify({'data': _scope().list_questionnaires()})


@api_bp.route('/questionnaires', methods=['POST'])
@principal_required
def create_questionnaire():
    data = _payload()
    questionnaire_id = _scope().create_questionnaire(
        title=data.get('title', ''),
        description=data.get('description'),
        status=data.get('status', 'draft'),
        organization_id=data.get('organization_id'),
    )
    return jsonify({'id': questionnaire_id}), 201


@api_bp.route('/questionnaires/<questionnaire_id>', methods=['GET'])
@principal_required
def get_questionnaire(questionnaire_id):
    scope = _scope()
    questionnaire = scope.get_questionnaire(questionnaire_id)
    questionnaire['questions'] = scope.list_questions(questionnaire_id)
    return jsonify(questionnaire)


@api_bp.route('/questionnaires/<questionnaire_id>', methods=['PATCH'])
@principal_required
def update_questionnaire(questionnaire_id):
    return _affected(_scope().update_questionnaire(questionnaire_id, **_payload()))


@api_bp.route('/questionnaires/<questionnaire_id>', methods=['DELETE'])
@principal_required
def delete_questionnaire(questionnaire_id):
    return _affected(_scope().delete_questionnaire(questionnaire_id), key='deleted')


@api_bp.route('/questionnaires/<questionnaire_id>/questions', methods=['GET'])
@principal_required
def list_questions(questionnaire_id):
    scope = _scope()
    scope.get_questionnaire(questionnaire_id)
    return jsonify({'data': scope.list_questions(questionnaire_id)})


@api_bp.route('/questionnaires/<questionnaire_id>/questions', methods=['POST'])
@principal_required
def add_question(questionnaire_id):
    data = _payload()
    question_id = _scope().add_question(
        questionnaire_id,
        text=data.get('text', ''),
        question_type=data.get('question_type', 'likert_scale'),
        category=data.get('category'),
        risk_inverted=bool(data.get('risk_inverted', True)),
        min_value=int(data.get('min_value', 1)),
        max_value=int(data.get('max_value', 5)),
        order_index=data.get('order_index'),
        is_required=bool(data.get('is_required', True)),
    )
    return jsonify({'id': question_id}), 201


@api_bp.route('/questions/<question_id>', methods=['DELETE'])
@principal_required
def delete_question(question_id):
    return _affected(_scope().delete_question(question_id), key='deleted')


# ========================================
# ASSESSMENTS
# ========================================

@api_bp.route('/assessments', methods=['GET'])
@principal_required
def list_assessments():
    return jsonify({'data': _scope().list_assessments(status=request.args.get('status'))})


@api_bp.route('/assessments', methods=['POST'])
@principal_required
def create_assessment():
    data = _payload()
    assessment_id = _scope().create_assessment(
        questionnaire_id=data.get('questionnaire_id'),
        title=data.get('title', ''),
        department_id=data.get('department_id'),
        start_date=data.get('start_date'),
        end_date=data.get('end_date'),
        organization_id=data.get('organization_id'),
    )
    return jsonify({'id': assessment_id}), 201


@api_bp.route('/assessments/<assessment_id>', methods=['GET'])
@principal_required
def get_assessment(assessment_id):
    return jsonify(_scope().get_assessment(assessment_id))


@api_bp.route('/assessments/<assessment_id>', methods=['PATCH'])
@principal_required
def update_assessment(assessment_id):
    return _affected(_scope().update_assessment(assessment_id, **_payload()))


@api_bp.route('/assessments/<assessment_id>', methods=['DELETE'])
@principal_required
def delete_assessment(assessment_id):
    return _affected(_scope().delete_assessment(assessment_id), key='deleted')


@api_bp.route('/assessments/<assessment_id>/status', methods=['POST'])
@principal_required
def set_assessment_status(assessment_id):
    status = _payload().get('status', '')
    return _affected(_scope().set_assessment_status(assessment_id, status))


# ========================================
# MEMBERS
# ========================================

@api_bp.route('/members', methods=['GET'])
@principal_required
def list_members():
    return jsonify({'data': _scope().list_members()})


@api_bp.route('/members', methods=['POST'])
@principal_required
def create_member():
    data = _payload()
    user_id = invite_member(
        g.principal,
        email=data.get('email', ''),
        full_name=data.get('full_name', ''),
        role=data.get('role', 'member'),
        password=data.get('password', ''),
    )
    return jsonify({'id': user_id}), 201


@api_bp.route('/members/<user_id>', methods=['PATCH'])
@principal_required
def change_member_role(user_id):
    return _affected(_scope().set_member_role(user_id, _payload().get('role', '')))


@api_bp.route('/members/<user_id>', methods=['DELETE'])
@principal_required
def offboard_member(user_id):
    return _affected(_scope().offboard_member(user_id), key='offboarded')


# ========================================
# AUDIT LOG
# ========================================

@api_bp.route('/audit-log', methods=['GET'])
@principal_required
def audit_log():
    """
    Query params:
        - action: Filter by action
        - limit: Max results (default 100, max 500)
        - offset: Pagination offset
    """
    try:
        limit = min(int(request.args.get('limit', 100)), 500)
        offset = int(request.args.get('offset', 0))
    except ValueError:
        return jsonify({'error': 'Invalid limit or offset', 'code': 'VALIDATION_ERROR'}), 400

    entries = get_audit_logs(g.principal, limit=limit, offset=offset,
                             action=request.args.get('action'))
    return jsonify({'data': entries, 'meta': {'limit': limit, 'offset': offset}})
