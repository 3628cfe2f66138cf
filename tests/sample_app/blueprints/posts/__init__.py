"""
Posts blueprint: list, read and create posts.
"""

from flask import Blueprint

bp = Blueprint("posts", __name__)

# Import routes after blueprint creation to avoid circular imports.
from sample_app.blueprints.posts import routes  # noqa: E402, F401
