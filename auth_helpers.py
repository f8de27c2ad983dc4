"""
Shared authentication decorators and helpers for Sollar.

Used by all blueprints to ensure consistent auth handling. The session holds
only the user id; the Principal (organization and role) is resolved from the
database on every request and placed on flask.g.
"""

from functools import wraps
from flask import session, jsonify, g

from errors import Unauthenticated, NOT_PERMITTED
from identity import resolve_principal
from roles import Action, required_role, has_min_role
from logging_config import get_logger, log_security_event

logger = get_logger(__name__)


def get_current_principal():
    """Principal for this request, or None when not signed in"""
    if 'principal' in g:
        return g.principal
    try:
        g.principal = resolve_principal(session.get('user_id'))
    except Unauthenticated:
        g.principal = None
    return g.principal


def principal_required(f):
    """Decorator requiring a signed-in principal. Sets g.principal."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        principal = get_current_principal()
        if principal is None:
            session.pop('user_id', None)
            return jsonify({'error': NOT_PERMITTED, 'code': 'AUTH_REQUIRED'}), 401
        return f(*args, **kwargs)
    return decorated_function


def role_required(action: Action):
    """
    Decorator requiring the minimum role for an action.
    Must be used AFTER @principal_required.

    Usage:
        @api_bp.route('/api/organization', methods=['DELETE'])
        @principal_required
        @role_required(Action.DELETE_ORGANIZATION)
        def delete_organization():
            ...
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = g.principal
            if not has_min_role(principal.role, required_role(action)):
                log_security_event(logger, 'access_denied', {
                    'action': action.value,
                    'user_id': principal.user_id,
                })
                return jsonify({'error': NOT_PERMITTED, 'code': 'FORBIDDEN'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator
