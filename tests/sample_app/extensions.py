"""
Extension singletons of the sample application, bound in ``create_app``.

``db`` must be ``testbed.db.SQLAlchemy`` rather than the plain
Flask-SQLAlchemy class, otherwise the harness cannot see the
connections the application opens.
"""

from flask_login import LoginManager
from flask_mail import Mail
from flask_wtf.csrf import CSRFProtect

from testbed.db import SQLAlchemy

db = SQLAlchemy()

# -- Sign-in ------------------------------------------------------------------
login_manager = LoginManager()
login_manager.login_view = "auth.login"
login_manager.login_message = "Sign in to write posts."

# -- Forms -------------------------------------------------------------------
# Disabled by TestingConfig; /auth/csrf-check validates tokens by hand.
csrf = CSRFProtect()

# -- Mail --------------------------------------------------------------------
# Delivery is suppressed while TESTING is on.
mail = Mail()
