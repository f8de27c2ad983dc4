"""
Blueprints for Sollar.

Import all blueprints for easy registration in app_factory.py.
"""

from blueprints.auth import auth_bp
from blueprints.api import api_bp
from blueprints.analytics import analytics_bp
from blueprints.survey import survey_bp

__all__ = [
    'auth_bp',
    'api_bp',
    'analytics_bp',
    'survey_bp',
]
