"""
Main blueprint: landing page, health check and session helpers.
"""

from flask import Blueprint

bp = Blueprint("main", __name__)

# Import routes after blueprint creation to avoid circular imports.
from sample_app.blueprints.main import routes  # noqa: E402, F401
