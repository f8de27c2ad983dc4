"""
Authentication blueprint - login, logout, signup.

Routes:
- POST /auth/login - Password login
- POST /auth/logout - Logout
- POST /auth/signup - Create organization and its first admin
- GET  /auth/me - Current principal
"""

from flask import Blueprint, jsonify, request, session, g

from extensions import limiter
from auth_helpers import principal_required
from identity import authenticate, resolve_principal, signup as create_signup
from audit import log_action, AuditAction
from errors import NOT_PERMITTED

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def _payload():
    return request.get_json(silent=True) or request.form.to_dict()


def _principal_json(principal):
    return {
        'user_id': principal.user_id,
        'organization_id': principal.organization_id,
        'role': principal.role.label,
    }


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """Password login. Only the user id is kept in the session."""
    data = _payload()
    user_id = authenticate(data.get('email', ''), data.get('password', ''))
    if not user_id:
        return jsonify({'error': NOT_PERMITTED, 'code': 'AUTH_INVALID'}), 401

    principal = resolve_principal(user_id)
    session.clear()
    session['user_id'] = user_id
    session.permanent = True
    log_action(principal, AuditAction.LOGIN_SUCCESS, entity_type='user', entity_id=user_id)
    return jsonify(_principal_json(principal))


@auth_bp.route('/logout', methods=['POST'])
@principal_required
def logout():
    log_action(g.principal, AuditAction.LOGOUT, entity_type='user', entity_id=g.principal.user_id)
    session.clear()
    return jsonify({'logged_out': True})


@auth_bp.route('/signup', methods=['POST'])
@limiter.limit("5 per hour")
def signup():
    """Create a new organization; the caller becomes its admin"""
    data = _payload()
    principal = create_signup(
        org_name=data.get('organization_name', ''),
        email=data.get('email', ''),
        password=data.get('password', ''),
        full_name=data.get('full_name', ''),
        plan_tier=data.get('plan_tier', 'base'),
    )
    session.clear()
    session['user_id'] = principal.user_id
    session.permanent = True
    log_action(principal, AuditAction.ORGANIZATION_CREATED, entity_type='organization',
               entity_id=principal.organization_id)
    return jsonify(_principal_json(principal)), 201


@auth_bp.route('/me', methods=['GET'])
@principal_required
def me():
    return jsonify(_principal_json(g.principal))
