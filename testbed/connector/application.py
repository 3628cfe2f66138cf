"""
Component container for a booted application.

The harness addresses the pieces of the application it needs (database,
mailer, session interface, logged-in user, request/response) as named
components.  Each component is built lazily from a definition, a factory
that receives the Flask app, so a component can be thrown away and
rebuilt between requests without rebooting the application.
"""

import logging
from collections.abc import Callable

import flask_login
from flask import Flask

from testbed.exceptions import ConfigurationError, HarnessError

logger = logging.getLogger(__name__)

ComponentFactory = Callable[[Flask], object]


class Application:
    """
    A booted Flask application plus its named components.

    A factory that returns ``None`` means the component is not available
    in this application (e.g. no Flask-Mail configured).
    """

    def __init__(self, flask_app: Flask, definitions: dict[str, ComponentFactory]):
        self.flask_app = flask_app
        self._definitions = dict(definitions)
        self._components: dict[str, object] = {}

    def __repr__(self) -> str:
        return f"<Application {self.flask_app.name}>"

    def has(self, name: str, check_instance: bool = False) -> bool:
        """
        Whether the component is defined, or already instantiated when
        ``check_instance`` is true.
        """
        if check_instance:
            return name in self._components
        return name in self._definitions

    def get(self, name: str, throw: bool = True):
        """
        Return the component, building it on first access.

        Raises:
            ConfigurationError: If the component is not available and
                                ``throw`` is true.
        """
        if name in self._components:
            return self._components[name]

        definition = self._definitions.get(name)
        component = definition(self.flask_app) if definition is not None else None
        if component is None:
            if throw:
                raise ConfigurationError(
                    f"Component '{name}' is not available in application "
                    f"'{self.flask_app.name}'.",
                    field=name,
                )
            return None

        self._components[name] = component
        return component

    def set(self, name: str, definition: ComponentFactory | None) -> None:
        """Replace a component definition; the current instance is dropped."""
        self._components.pop(name, None)
        if definition is None:
            self._definitions.pop(name, None)
        else:
            self._definitions[name] = definition

    def get_components(self, return_definitions: bool = True) -> dict:
        if return_definitions:
            return dict(self._definitions)
        return dict(self._components)


# =========================================================================
# User component
# =========================================================================

_NOT_LOADED = object()


class WebUser:
    """
    Identity of the simulated browser, backed by Flask-Login.

    The identity is loaded lazily from the ``_user_id`` entry of the
    browser's session through the app's ``user_loader``, so rebuilding
    this component after switching browser sessions picks up the new
    user.
    """

    def __init__(self, connector, login_manager: flask_login.LoginManager):
        self.connector = connector
        self.login_manager = login_manager
        self._identity = _NOT_LOADED

    @property
    def identity(self):
        if self._identity is _NOT_LOADED:
            user_id = self.connector.context.session.get("_user_id")
            self._identity = self.load_identity(user_id) if user_id is not None else None
        return self._identity

    @property
    def is_guest(self) -> bool:
        return self.identity is None

    @property
    def id(self) -> str | None:  # pylint: disable=invalid-name
        identity = self.identity
        return identity.get_id() if identity is not None else None

    def load_identity(self, user_id):
        """
        Look a user up by primary key through the app's user loader.

        Raises:
            ConfigurationError: If the login manager has no user loader.
        """
        callback = self.login_manager._user_callback  # pylint: disable=protected-access
        if callback is None:
            raise ConfigurationError(
                "The login manager has no user_loader registered.", field="user"
            )
        return callback(str(user_id))

    def login(self, identity, remember: bool = False) -> None:
        """
        Log ``identity`` in by writing it into the browser session.

        Raises:
            HarnessError: If Flask-Login refuses the user (inactive).
        """
        logged_in = self.connector.run_in_request(
            lambda: flask_login.login_user(identity, remember=remember)
        )
        if not logged_in:
            raise HarnessError(f"User {identity.get_id()} is not active and cannot log in.")
        self._identity = identity

    def logout(self) -> None:
        self.connector.run_in_request(flask_login.logout_user)
        self._identity = None
