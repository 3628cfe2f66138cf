"""
Auth blueprint: sign in, sign out and identity inspection.
"""

from flask import Blueprint

bp = Blueprint("auth", __name__)

# Import routes after blueprint creation to avoid circular imports.
from sample_app.blueprints.auth import routes  # noqa: E402, F401
