"""
Flask Application Factory for Sollar

This module implements the Flask app factory pattern, allowing for different
configurations for development, testing, and production environments.
"""
import os
import secrets
import time
from datetime import timedelta
from flask import Flask, g, request, jsonify
from flask_cors import CORS
from flask_wtf.csrf import CSRFError

from db import init_db
from audit import init_audit_tables
from config import get_thresholds, reset_thresholds
from errors import (
    Unauthenticated, Forbidden, NotFound, StoreUnavailable, InvalidSubmission,
    InvalidTransition, ConfirmationRequired, AggregationCancelled, NOT_PERMITTED
)
from extensions import csrf, limiter, AnonymousPathSessionInterface
from logging_config import get_logger, log_request

logger = get_logger(__name__)

# Seconds clients should wait before retrying after a store outage
RETRY_AFTER_SECONDS = 5


def create_app(config_name='development'):
    """
    Flask application factory.

    Args:
        config_name: One of 'development', 'testing', or 'production'

    Returns:
        Flask application instance
    """
    # Initialize databases (unless testing - tests handle their own DB)
    if config_name != 'testing':
        init_db()
        init_audit_tables()

    # Create Flask app
    app = Flask(__name__)

    # Load configuration based on environment
    _configure_app(app, config_name)

    # Initialize extensions
    _init_extensions(app)

    # Register blueprints
    _register_blueprints(app)

    # Register middleware and handlers
    _register_middleware(app)
    _register_error_handlers(app)

    return app


def _configure_app(app, config_name):
    """Configure app based on environment."""
    # Determine if we're in dev/test mode
    is_dev_or_test = (
        config_name in ('development', 'testing') or
        os.environ.get('FLASK_DEBUG', '').lower() == 'true' or
        os.environ.get('TESTING', '').lower() == 'true'
    )

    # Secret key configuration
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY and not is_dev_or_test:
        raise RuntimeError('SECRET_KEY must be set in production')
    app.secret_key = SECRET_KEY or secrets.token_hex(32)

    # Debug mode
    if config_name == 'development':
        app.debug = os.environ.get('FLASK_DEBUG', 'true').lower() == 'true'
    elif config_name == 'testing':
        app.debug = False
        app.config['TESTING'] = True
        app.config['WTF_CSRF_ENABLED'] = False
    else:  # production
        app.debug = False

    # Session configuration - timeout after 8 hours of inactivity
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=8)
    app.config['SESSION_REFRESH_EACH_REQUEST'] = True

    # Security configuration
    app.config['MAX_CONTENT_LENGTH'] = 1 * 1024 * 1024  # 1MB max body
    app.config['SESSION_COOKIE_SECURE'] = not app.debug and config_name != 'testing'
    app.config['SESSION_COOKIE_HTTPONLY'] = True
    app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

    # Aggregation timeout in seconds
    app.config['AGGREGATION_TIMEOUT'] = float(os.environ.get('AGGREGATION_TIMEOUT', '30'))

    # Fail at startup on a bad threshold configuration
    reset_thresholds()
    app.config['SUPPRESSION_THRESHOLDS'] = get_thresholds().as_dict()
    logger.info("Suppression thresholds loaded", extra={'extra_data': app.config['SUPPRESSION_THRESHOLDS']})


def _init_extensions(app):
    """Initialize Flask extensions."""
    # No session cookie on respondent replies
    app.session_interface = AnonymousPathSessionInterface()

    # Initialize CSRF protection
    csrf.init_app(app)

    # Initialize rate limiter
    limiter.init_app(app)

    # CORS Configuration for API endpoints
    CORS(app, resources={
        r"/api/*": {
            "origins": os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(','),
            "methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type"],
            "supports_credentials": True,
        },
        r"/survey/*": {
            "origins": os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(','),
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type"],
        },
    })


def _register_blueprints(app):
    """Register all application blueprints."""
    from blueprints import auth_bp, api_bp, analytics_bp, survey_bp

    # JSON endpoints; session cookies are SameSite=Lax
    csrf.exempt(auth_bp)
    csrf.exempt(api_bp)
    csrf.exempt(analytics_bp)
    csrf.exempt(survey_bp)

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(analytics_bp)
    app.register_blueprint(survey_bp)


def _register_middleware(app):
    """Register middleware functions."""
    @app.before_request
    def start_timer():
        g.request_started = time.monotonic()

    @app.after_request
    def log_response(response):
        started = g.get('request_started')
        if started is not None:
            log_request(logger, request, response.status_code,
                        round((time.monotonic() - started) * 1000, 1))
        return response

    # Security headers middleware
    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses"""
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'no-referrer'
        response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
        response.headers['Cache-Control'] = 'no-store'

        # Only add HSTS in production (not in debug mode)
        if not app.debug and not app.config.get('TESTING'):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        return response


def _error(message, code, status):
    return jsonify({'error': message, 'code': code}), status


def _register_error_handlers(app):
    """Register error handlers. Messages never say why access was denied."""
    @app.errorhandler(Unauthenticated)
    def handle_unauthenticated(e):
        return _error(NOT_PERMITTED, 'AUTH_REQUIRED', 401)

    @app.errorhandler(Forbidden)
    def handle_forbidden(e):
        return _error(NOT_PERMITTED, 'FORBIDDEN', 403)

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return _error(str(e), 'NOT_FOUND', 404)

    @app.errorhandler(InvalidSubmission)
    def handle_invalid_submission(e):
        return _error(str(e), 'INVALID_SUBMISSION', 400)

    @app.errorhandler(InvalidTransition)
    def handle_invalid_transition(e):
        return _error(str(e), 'INVALID_TRANSITION', 409)

    @app.errorhandler(ConfirmationRequired)
    def handle_confirmation_required(e):
        return _error(str(e), 'CONFIRMATION_REQUIRED', 400)

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        return _error(str(e), 'VALIDATION_ERROR', 400)

    @app.errorhandler(StoreUnavailable)
    def handle_store_unavailable(e):
        response, status = _error(str(e), 'STORE_UNAVAILABLE', 503)
        response.headers['Retry-After'] = str(RETRY_AFTER_SECONDS)
        return response, status

    @app.errorhandler(AggregationCancelled)
    def handle_aggregation_cancelled(e):
        response, status = _error(str(e), 'AGGREGATION_CANCELLED', 503)
        response.headers['Retry-After'] = str(RETRY_AFTER_SECONDS)
        return response, status

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return _error('Session expired. Please try again.', 'CSRF_FAILED', 400)

    @app.errorhandler(404)
    def handle_unknown_route(e):
        return _error('Not found', 'NOT_FOUND', 404)
