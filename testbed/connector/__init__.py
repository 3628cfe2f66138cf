"""
Application connector.

The ``Connector`` is the simulated browser: it boots the application
described by the configuration file, sends requests to it in-process
through the Flask test client, keeps the browser's cookie jar and a
decoded view of its session, and captures the emails the application
sends.

While an application is booted its app context stays pushed, so code in
the test body can use ``flask.current_app`` and the ORM session just like
application code does.  Each request runs in a fresh app context of its
own, so request-scoped resources (``g``, the scoped ORM session) are
created and torn down per request as they are in production.
"""

import io
import logging
import re
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit

import flask
from flask import Flask, got_request_exception
from flask.sessions import SecureCookieSessionInterface
from flask.testing import FlaskClient
from flask_mail import email_dispatched
from flask_wtf.csrf import generate_csrf
from itsdangerous import BadSignature, Signer
from werkzeug.datastructures import Headers, MultiDict

from testbed.config import (
    CLEAN_CLEAR,
    CLEAN_RECREATE,
    HarnessConfig,
    load_config_file,
    resolve_application_class,
)
from testbed.connector.application import Application, WebUser
from testbed.connector.http import BrowserRequest, BrowserResponse, RequestContext
from testbed.connector.logger import Logger
from testbed.exceptions import ConfigurationError, HarnessError

_logger = logging.getLogger(__name__)


class Connector:
    """
    In-process browser for one Flask application.

    Args:
        server: Front-controller environment (``SCRIPT_FILENAME``,
                ``SCRIPT_NAME``, ``SERVER_NAME``, ``SERVER_PORT``,
                ``HTTPS``), usually ``HarnessConfig.server_params()``.
    """

    def __init__(self, server: dict | None = None):
        self.server = dict(server or {})

        # -- Settings applied by configure() -------------------------------
        self.config_file: str | None = None
        self.application_class: str | type | None = None
        self.response_clean_method = CLEAN_CLEAR
        self.request_clean_method = CLEAN_RECREATE
        self.recreate_components: list[str] = []
        self.recreate_application = False
        self.close_session_on_recreate_application = True
        self.follow_redirects = True
        self.max_redirects = 5

        # -- Browser state -------------------------------------------------
        self.app: Application | None = None
        self.context = RequestContext()
        self.history: list[str] = []
        self.emails: list = []
        self.response: BrowserResponse | None = None

        self._logger: Logger | None = None
        self._app_context: flask.ctx.AppContext | None = None
        self._request_exception: BaseException | None = None

    def configure(self, config: HarnessConfig) -> None:
        """Copy the connector-related options from ``config``."""
        self.config_file = str(Path(config.config_file).resolve()) if config.config_file else None
        self.application_class = config.application_class
        self.response_clean_method = config.response_clean_method
        self.request_clean_method = config.request_clean_method
        self.recreate_components = list(config.recreate_components)
        self.recreate_application = config.recreate_application
        self.close_session_on_recreate_application = (
            config.close_session_on_recreate_application
        )

    # =====================================================================
    # Application lifecycle
    # =====================================================================

    def start_app(self, logger: Logger | None = None) -> Application:
        """
        Boot the application from the configuration file.

        Args:
            logger: Log capture handler to attach while the app is booted.
                    When omitted, the handler of a previous boot is reused.

        Returns:
            The booted ``Application``.

        Raises:
            ConfigurationError: If the config file is missing or invalid,
                                or the app is not of the expected class.
        """
        if not self.config_file:
            raise ConfigurationError("Option 'configFile' is required.", field="configFile")

        module = load_config_file(self.config_file)
        expected = resolve_application_class(
            self.application_class or getattr(module, "APPLICATION_CLASS", None)
        )
        flask_app = module.create_app()
        if not isinstance(flask_app, expected):
            raise ConfigurationError(
                f"Application must be an instance of {expected.__module__}."
                f"{expected.__qualname__}, got {type(flask_app).__qualname__}.",
                field="applicationClass",
            )

        definitions = self._core_components()
        definitions.update(getattr(module, "COMPONENTS", None) or {})

        self._app_context = flask_app.app_context()
        self._app_context.push()
        self.app = Application(flask_app, definitions)

        if logger is not None:
            self._logger = logger
        if self._logger is not None:
            self._logger.attach()
        email_dispatched.connect(self._record_email)
        got_request_exception.connect(self._record_exception, flask_app)

        _logger.debug("Booted application %s", flask_app.name)
        return self.app

    def get_application(self) -> Application:
        """Return the booted application, booting it if needed."""
        if self.app is None:
            self.start_app()
        return self.app

    def reset_application(self, close_session: bool = True) -> None:
        """
        Tear the booted application down.

        Args:
            close_session: Close the application's session component
                           first, if it is instantiated and closable.
        """
        if self.app is None:
            return

        flask_app = self.app.flask_app
        if close_session and self.app.has("session", True):
            close = getattr(self.app.get("session"), "close", None)
            if callable(close):
                close()

        email_dispatched.disconnect(self._record_email)
        got_request_exception.disconnect(self._record_exception, flask_app)
        if self._logger is not None:
            self._logger.detach()

        try:
            self._app_context.pop()
        finally:
            self.app = None
            self._app_context = None
        _logger.debug("Reset application %s", flask_app.name)

    def reset_request_state(self) -> None:
        """Forget browser state and end the request-scoped resources."""
        self.context.reset()
        if self.app is not None:
            self.app.flask_app.do_teardown_appcontext()

    def restart(self) -> None:
        """Start over with an empty cookie jar and history."""
        self.context.reset()
        self.history = []
        self.response = None

    def _core_components(self) -> dict:
        return {
            "db": lambda app: app.extensions.get("sqlalchemy"),
            "mailer": lambda app: app.extensions.get("mail"),
            "session": lambda app: app.session_interface,
            "user": self._make_user,
            "request": lambda app: BrowserRequest(self.server),
            "response": lambda app: BrowserResponse(),
        }

    def _make_user(self, flask_app: Flask) -> WebUser | None:
        login_manager = getattr(flask_app, "login_manager", None)
        if login_manager is None:
            return None
        return WebUser(self, login_manager)

    def get_component(self, name: str):
        """
        Return a component of the booted application.

        Raises:
            ConfigurationError: If the component is not available.
        """
        return self.get_application().get(name)

    # =====================================================================
    # Requests
    # =====================================================================

    def request(
        self,
        method: str,
        url: str,
        params: dict | None = None,
        files: dict | None = None,
        headers: dict | None = None,
        content: bytes | str | None = None,
    ) -> BrowserResponse:
        """
        Send one request to the application and follow its redirects.

        Exceptions raised by the application are captured on the
        returned response (status 500) instead of propagating.

        Raises:
            HarnessError: On too many redirects, or when the harness
                          itself fails while serving the request.
        """
        self._before_request()
        application = self.get_application()

        browser_request = application.get("request")
        browser_request.method = method.upper()
        browser_request.url = url
        browser_request.params = dict(params or {})
        browser_request.files = dict(files or {})
        browser_request.headers = dict(headers or {})
        browser_request.content = content
        response = application.get("response")

        method = browser_request.method
        params = browser_request.params
        files = browser_request.files
        for _ in range(self.max_redirects + 1):
            self._dispatch(application, response, method, url, params, files, headers, content)
            if not (self.follow_redirects and response.is_redirect):
                break
            location = urljoin(response.url, response.headers["Location"])
            if not self._is_internal(location):
                break
            if response.status_code not in (307, 308):
                method, params, files, content = "GET", {}, {}, None
            url = location
        else:
            raise HarnessError(
                f"The maximum number ({self.max_redirects}) of redirections was reached."
            )

        self.response = response
        if self._logger is not None:
            self._logger.echo_pending()
        return response

    def _before_request(self) -> None:
        if self.recreate_application:
            self.reset_application(self.close_session_on_recreate_application)
            return

        application = self.get_application()
        # The test body's ORM session shares the pinned connections; end
        # its transaction so the request commits on its own.
        db = application.get("db", throw=False)
        if db is not None:
            db.session.remove()

        definitions = application.get_components(True)
        for name, clean_method in (
            ("response", self.response_clean_method),
            ("request", self.request_clean_method),
        ):
            if not application.has(name, True):
                continue
            if clean_method == CLEAN_CLEAR:
                application.get(name).clear()
            else:
                application.set(name, definitions.get(name))

        for name in self.recreate_components:
            if application.has(name, True):
                _logger.debug("Recreating component %s", name)
                application.set(name, definitions.get(name))

    def _dispatch(self, application, response, method, url, params, files, headers, content):
        flask_app = application.flask_app
        path, query = self._split_url(url)

        data = None
        if content is not None:
            data = content
        elif method in ("GET", "HEAD"):
            for key, value in params.items():
                query[key] = value
        else:
            data = dict(params)
            data.update({name: _file_field(value) for name, value in files.items()})

        self.context.get = query.to_dict()
        self.context.post = dict(params) if method not in ("GET", "HEAD") else {}
        self.context.files = dict(files)

        response.clear()
        response.url = self._absolute_url(path, query)
        self._request_exception = None
        client = self._test_client(flask_app)
        try:
            with flask_app.app_context():
                result = client.open(
                    path,
                    method=method,
                    base_url=self._base_url(),
                    query_string=query,
                    headers=Headers(headers or {}),
                    data=data,
                    environ_base=self._environ_base(),
                )
                response.status_code = result.status_code
                response.headers = Headers(result.headers)
                response.data = result.get_data()
                result.close()
        except HarnessError:
            raise
        except Exception as exc:  # pylint: disable=broad-exception-caught
            _logger.debug("Application raised %r while serving %s", exc, response.url)
            response.status_code = 500
            response.exception = exc
        else:
            if isinstance(self._request_exception, HarnessError):
                raise self._request_exception
            response.exception = self._request_exception

        self._refresh_session_view(flask_app)
        self.history.append(response.url)
        _logger.debug("%s %s -> %s", method, response.url, response.status_code)

    def _record_exception(self, sender, exception, **extra):  # pylint: disable=unused-argument
        self._request_exception = exception

    def run_in_request(self, callback):
        """
        Call ``callback`` inside a request carrying the browser's cookies.

        Session changes made by the callback are saved back into the
        cookie jar, so this is how the harness logs users in and writes
        session values without a round trip through a view.
        """
        flask_app = self.get_application().flask_app
        client = self._test_client(flask_app)
        # Same steps as FlaskClient.session_transaction(), but with the
        # request context pushed while the callback runs.
        # pylint: disable=protected-access
        with flask_app.app_context():
            ctx = flask_app.test_request_context(
                "/", base_url=self._base_url(), environ_base=self._environ_base()
            )
            client._add_cookies_to_wsgi(ctx.request.environ)
            with ctx:
                result = callback()
                carrier = flask_app.response_class()
                flask_app.session_interface.save_session(
                    flask_app, flask.session._get_current_object(), carrier
                )
        client._update_cookies_from_response(
            ctx.request.host.partition(":")[0],
            ctx.request.path,
            carrier.headers.getlist("Set-Cookie"),
        )
        self._refresh_session_view(flask_app)
        return result

    def write_session(self, **values) -> None:
        """Store ``values`` in the browser's application session."""
        self.run_in_request(lambda: flask.session.update(values))

    def url_for(self, endpoint: str, **values) -> str:
        """Build a URL for ``endpoint`` as the application would."""
        flask_app = self.get_application().flask_app
        with flask_app.test_request_context(
            "/", base_url=self._base_url(), environ_base=self._environ_base()
        ):
            return flask.url_for(endpoint, **values)

    # -- URL helpers -------------------------------------------------------

    def _base_url(self) -> str:
        https = bool(self.server.get("HTTPS"))
        scheme = "https" if https else "http"
        host = self.server.get("SERVER_NAME") or "localhost"
        port = str(self.server.get("SERVER_PORT") or "")
        if port and port != ("443" if https else "80"):
            host = f"{host}:{port}"
        return f"{scheme}://{host}{self.server.get('SCRIPT_NAME', '')}"

    def _environ_base(self) -> dict:
        return {
            "REMOTE_ADDR": "127.0.0.1",
            "HTTP_USER_AGENT": "testbed",
            "SCRIPT_FILENAME": self.server.get("SCRIPT_FILENAME", ""),
        }

    def _split_url(self, url: str) -> tuple[str, MultiDict]:
        """Split ``url`` into a path below the script root and its query."""
        parts = urlsplit(url)
        path = parts.path or "/"
        if not path.startswith("/"):
            path = "/" + path
        script_name = self.server.get("SCRIPT_NAME", "")
        if script_name and (path == script_name or path.startswith(script_name + "/")):
            path = path[len(script_name):] or "/"
        return path, MultiDict(parse_qsl(parts.query, keep_blank_values=True))

    def _absolute_url(self, path: str, query: MultiDict) -> str:
        url = self._base_url() + path
        if query:
            url += "?" + urlencode(list(query.items(multi=True)))
        return url

    def _is_internal(self, url: str) -> bool:
        host = urlsplit(url).hostname
        if not host:
            return True
        return any(re.match(pattern, host) for pattern in self.get_internal_domains())

    def get_internal_domains(self) -> list[str]:
        """Regex patterns of the hosts this connector serves in-process."""
        hosts = {self.server.get("SERVER_NAME") or "localhost"}
        if self.app is not None:
            server_name = self.app.flask_app.config.get("SERVER_NAME")
            if server_name:
                hosts.add(server_name.split(":")[0])
        return [f"^{re.escape(host)}$" for host in sorted(hosts)]

    # =====================================================================
    # Cookies and session
    # =====================================================================

    def _test_client(self, flask_app: Flask) -> FlaskClient:
        client = flask_app.test_client()
        # The jar belongs to the browser and outlives recreated apps.
        client._cookies = self.context.cookies  # pylint: disable=protected-access
        return client

    def _host(self) -> str:
        return (self.server.get("SERVER_NAME") or "localhost").lower()

    def set_cookie(self, name: str, value, path: str = "/") -> None:
        """Put a cookie for the browser's host into the jar."""
        client = self._test_client(self.get_application().flask_app)
        client.set_cookie(name, str(value), domain=self._host(), path=path)

    def get_cookie(self, name: str):
        """Value of the cookie ``name`` in the jar, whatever its path."""
        for cookie in self.context.cookies.values():
            if cookie.key == name:
                return cookie.decoded_value
        return None

    def delete_cookie(self, name: str) -> None:
        """Drop every cookie called ``name`` from the jar."""
        for jar_key in [key for key, cookie in self.context.cookies.items() if cookie.key == name]:
            del self.context.cookies[jar_key]

    def _refresh_session_view(self, flask_app: Flask) -> None:
        interface = flask_app.session_interface
        value = self.get_cookie(flask_app.config["SESSION_COOKIE_NAME"])
        session: dict = {}
        if value and isinstance(interface, SecureCookieSessionInterface):
            serializer = interface.get_signing_serializer(flask_app)
            if serializer is not None:
                try:
                    session = dict(serializer.loads(value))
                except BadSignature:
                    _logger.debug("Session cookie has an invalid signature; ignoring it")
        self.context.session = session

    def hash_cookie_data(self, name: str, value):
        """
        Encode a cookie value the way the application would set it.

        The session cookie is serialised with the app's session
        serializer.  Other cookies are signed with ``itsdangerous`` (salt =
        cookie name) when the app enables ``COOKIE_VALIDATION``.
        """
        flask_app = self.get_application().flask_app
        if name == flask_app.config["SESSION_COOKIE_NAME"]:
            interface = flask_app.session_interface
            if isinstance(interface, SecureCookieSessionInterface):
                return interface.get_signing_serializer(flask_app).dumps(dict(value))
            return value
        if not flask_app.config.get("COOKIE_VALIDATION", False):
            return value
        return Signer(flask_app.secret_key, salt=name).sign(str(value)).decode("utf-8")

    def get_csrf_param_name(self) -> str:
        flask_app = self.get_application().flask_app
        return flask_app.config.get("WTF_CSRF_FIELD_NAME", "csrf_token")

    def generate_csrf_token(self) -> str:
        """
        Return the signed form token for the CSRF token in the session.

        Flask-WTF stores a new raw token in the session when there is
        none yet.
        """
        return self.run_in_request(generate_csrf)

    def get_context(self) -> dict:
        """Browser state a session snapshot needs: cookie jar and history."""
        return {"cookies": dict(self.context.cookies), "history": list(self.history)}

    def set_context(self, context: dict) -> None:
        self.context.cookies = dict(context.get("cookies", {}))
        self.history = list(context.get("history", []))
        if self.app is not None:
            self._refresh_session_view(self.app.flask_app)

    # =====================================================================
    # Users and emails
    # =====================================================================

    def find_and_login_user(self, user) -> None:
        """
        Log a user in by primary key or identity object.

        Raises:
            ConfigurationError: If the app has no Flask-Login user component.
            HarnessError: If no user has the given primary key.
        """
        component = self.get_application().get("user", throw=False)
        if not isinstance(component, WebUser):
            raise ConfigurationError(
                "The application has no user component; is Flask-Login configured?",
                field="user",
            )
        if isinstance(user, (int, str)):
            identity = component.load_identity(user)
            if identity is None:
                raise HarnessError(f"User not found: {user}")
        else:
            identity = user
        component.login(identity)

    def _record_email(self, sender, **extra):
        # Flask-Mail 0.9 sends (message, app=...); later releases may send
        # (app, message=...).
        message = extra.get("message", sender)
        app = extra.get("app", sender)
        if self.app is not None and app is self.app.flask_app:
            self.emails.append(message)

    def _mailer(self):
        mailer = self.get_application().get("mailer", throw=False)
        if mailer is None or not getattr(mailer, "suppress", False):
            raise ConfigurationError(
                "Mailer component is not mocked, can't test emails. "
                "Enable MAIL_SUPPRESS_SEND (or TESTING) in the application.",
                field="mailer",
            )
        return mailer

    def get_emails(self) -> list:
        """
        Messages sent by the application since the last ``clear_emails()``.

        Booting a new application does not clear them; the connector
        lives for one test.

        Raises:
            ConfigurationError: If Flask-Mail is missing or really sends.
        """
        self._mailer()
        return list(self.emails)

    def clear_emails(self) -> None:
        self._mailer()
        self.emails = []


def _file_field(value):
    """Turn a file path into the ``(stream, filename)`` pair werkzeug posts."""
    if isinstance(value, (str, Path)):
        path = Path(value)
        return io.BytesIO(path.read_bytes()), path.name
    return value
