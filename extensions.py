"""
Shared Flask extensions for use by app_factory.py and blueprints.

Extensions are created here without app context, then initialized
with init_app() in app_factory.py.
"""
import os
from flask import g, request
from flask.sessions import SecureCookieSessionInterface
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect

from logging_config import is_anonymous_path

# CSRF Protection
csrf = CSRFProtect()


class AnonymousPathSessionInterface(SecureCookieSessionInterface):
    """Cookie sessions that are never written on respondent paths."""

    def save_session(self, app, session, response):
        if is_anonymous_path(request.path):
            return
        super().save_session(app, session, response)


def get_organization_or_ip():
    """
    Get rate limit key based on the caller's organization if signed in, else IP address.
    This allows per-organization rate limiting for API endpoints.
    """
    principal = g.get('principal')
    if principal is not None:
        return f"organization:{principal.organization_id}"
    return get_remote_address()


def get_survey_key():
    """Rate limit key for respondent endpoints: the assessment link, never the client."""
    if is_anonymous_path(request.path):
        return f"survey:{(request.view_args or {}).get('assessment_id', '')}"
    return get_remote_address()


# Rate Limiter - disabled in test environment
_ratelimit_enabled = os.environ.get('RATELIMIT_ENABLED', 'true').lower() != 'false'

limiter = Limiter(
    key_func=get_organization_or_ip,
    default_limits=["2000 per day", "200 per hour"],
    storage_uri="memory://",
    enabled=_ratelimit_enabled,
)
