"""
Sample application driven by the test suite.

A deliberately small blog: users sign in by email, create posts, and
every post writes an audit entry to a second database and mails its
author.  That is just enough surface to exercise cookies, sessions,
redirects, two database binds and the mailer from the harness.

Usage::

    from sample_app import create_app
    app = create_app("testing", SQLALCHEMY_DATABASE_URI="sqlite:///blog.db")
"""

import logging

from flask import Flask

from .config import config_by_name
from .extensions import csrf, db, login_manager, mail


def create_app(config_name: str = "testing", **overrides) -> Flask:
    """
    Build the sample application.

    Args:
        config_name: Which entry of ``config_by_name`` to load.
        **overrides: Config keys applied on top of the config class; the
                     harness config files pass the database URLs here.

    Returns:
        The application, with every table of every bind created.
    """
    try:
        config_class = config_by_name[config_name]
    except KeyError:
        raise ValueError(
            f"No sample config named '{config_name}' "
            f"(choose from {sorted(config_by_name)})"
        ) from None

    app = Flask(__name__)
    app.config.from_object(config_class)
    app.config.update(overrides)

    _init_extensions(app)
    _add_blueprints(app)

    @app.errorhandler(404)
    def not_found(error):  # pylint: disable=unused-argument
        return {"error": "not found"}, 404

    # -- Logging -------------------------------------------------------------
    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    with app.app_context():
        db.create_all()

    return app


def _init_extensions(app: Flask) -> None:
    for extension in (db, login_manager, csrf, mail):
        extension.init_app(app)

    from .models import User  # pylint: disable=import-outside-toplevel

    @login_manager.user_loader
    def load_user(user_id: str):
        return db.session.get(User, int(user_id))


def _add_blueprints(app: Flask) -> None:
    # pylint: disable=import-outside-toplevel
    from .blueprints import auth, main, posts

    app.register_blueprint(main.bp)
    app.register_blueprint(auth.bp, url_prefix="/auth")
    app.register_blueprint(posts.bp, url_prefix="/posts")
