"""
Test-lifecycle orchestrator.

``Harness`` runs the per-test lifecycle around the application under
test and exposes the actions tests use to drive it:

    before(test)
        1. build a fresh ``Connector`` and boot the application
        2. start a ``ConnectionWatcher`` for the whole test
        3. load the test's fixtures (under a nested watcher whose
           connections are closed as soon as loading is done)
        4. start a ``TransactionForcer`` when ``transaction`` is enabled

    after(test)
        1. reset the browser state and end request-scoped resources
        2. roll back every forced transaction
        3. unload fixtures when ``cleanup`` is enabled
        4. reset the application
        5. close every connection opened during the test
        6. restore options changed by ``reconfigure()``

``after()`` must run on every exit path; the pytest plugin calls it from
a fixture finaliser.
"""

import copy
import json
import logging
from contextlib import contextmanager

import sqlalchemy as sa
from flask.sessions import SecureCookieSessionInterface
from sqlalchemy.exc import NoInspectionAvailable, SQLAlchemyError

from testbed.config import HarnessConfig
from testbed.connector import Connector
from testbed.connector.forcer import TransactionForcer
from testbed.connector.http import BrowserResponse, SessionSnapshot
from testbed.connector.logger import Logger
from testbed.connector.watcher import ConnectionWatcher
from testbed.exceptions import HarnessError
from testbed.fixtures import ActiveFixture, FixturesStore

logger = logging.getLogger(__name__)

_MISSING = object()


class Harness:
    """
    Boots the application per test and isolates its database work.

    Args:
        options: Harness options, in camelCase or snake_case.  Validated
                 immediately; see ``testbed.config.HarnessConfig``.

    Raises:
        ConfigurationError: If the options are invalid.
    """

    def __init__(self, options: dict | None = None):
        self.config = HarnessConfig.from_mapping(options)
        self.config.validate()
        self._backup_config = self.config.copy()

        self.client: Connector | None = None
        self.headers: dict[str, str] = {}
        self.loaded_fixtures: list[FixturesStore] = []
        self._logger = Logger()
        self._connection_watcher: ConnectionWatcher | None = None
        self._transaction_forcer: TransactionForcer | None = None
        self._sessions: dict[str, SessionSnapshot] = {}

    # =====================================================================
    # Lifecycle
    # =====================================================================

    def initialize(self) -> None:
        """Suite start: ``transaction: None`` follows ``cleanup``."""
        if self.config.transaction is None:
            self.config.transaction = self.config.cleanup
            self._backup_config.transaction = self.config.cleanup
        logger.debug("Harness initialized with %s", self.config.as_dict())

    def before(self, test=None) -> None:
        """
        Prepare for one test.

        Args:
            test: The test object (instance or module) whose fixtures
                  method, named by ``fixturesMethod``, declares fixtures.
        """
        self._recreate_client()
        self._logger = Logger()
        self.client.start_app(self._logger)

        self._connection_watcher = ConnectionWatcher()
        self._connection_watcher.start()

        self._load_fixtures(test)
        self._start_transactions()

    def after(self, test=None) -> None:  # pylint: disable=unused-argument
        """Undo everything ``before()`` and the test did."""
        try:
            if self.client is not None:
                self.client.reset_request_state()
            self._rollback_transactions()
            if self.config.cleanup:
                try:
                    for store in self.loaded_fixtures:
                        store.unload_fixtures()
                finally:
                    self.loaded_fixtures = []
        finally:
            try:
                if self.client is not None:
                    self.client.reset_application()
            finally:
                if self._connection_watcher is not None:
                    self._connection_watcher.stop()
                    self._connection_watcher.close_all()
                    self._connection_watcher = None
                self.headers = {}
                self._sessions = {}
                self._reset_config()

    def failed(self, test=None) -> str:  # pylint: disable=unused-argument
        """Drain and return the application log of the failed test."""
        return self._logger.get_and_clear_log()

    def after_suite(self) -> None:
        logger.debug("Suite done, restoring state")

    def reconfigure(self, **options) -> None:
        """
        Change options for the rest of the current test and reboot.

        The previous options are restored by ``after()``.

        Raises:
            ConfigurationError: If the new options are invalid.
        """
        self.config.apply(options)
        self.config.validate()
        if self.client is None:
            return
        self.client.reset_application()
        self._configure_client()
        self._logger.get_and_clear_log()
        self.client.start_app(self._logger)

    def _recreate_client(self) -> None:
        self.client = Connector(self.config.server_params())
        self._configure_client()

    def _configure_client(self) -> None:
        self.client.configure(self.config)

    def _reset_config(self) -> None:
        if self.config != self._backup_config:
            self.config = self._backup_config.copy()

    def _start_transactions(self) -> None:
        if not self.config.transaction:
            return
        if self._transaction_forcer is not None:
            self._transaction_forcer.rollback_all()
            self._transaction_forcer.stop()
        self._transaction_forcer = TransactionForcer(self.config.ignore_colliding_dsn)
        self._transaction_forcer.start()

    def _rollback_transactions(self) -> None:
        if self._transaction_forcer is None:
            return
        try:
            self._transaction_forcer.rollback_all()
        finally:
            self._transaction_forcer.stop()
            self._transaction_forcer = None

    def _application(self):
        if self.client is None:
            raise HarnessError("The application is not running; call before() first.")
        return self.client.get_application()

    # =====================================================================
    # Fixtures
    # =====================================================================

    def _load_fixtures(self, test) -> None:
        logger.debug("[Fixtures] Loading fixtures")
        method = getattr(test, self.config.fixtures_method, None) if test is not None else None
        if not self.loaded_fixtures and callable(method):
            # Connections opened by fixtures must not leak into the test.
            watcher = ConnectionWatcher()
            watcher.start()
            try:
                self.have_fixtures(method())
            finally:
                watcher.stop()
                watcher.close_all()
        logger.debug("[Fixtures] Done")

    def have_fixtures(self, fixtures) -> None:
        """
        Load a set of fixtures; they are unloaded after the test.

        Args:
            fixtures: Mapping of fixture name to definition.
        """
        if not fixtures:
            return
        store = FixturesStore(fixtures)
        # Registered first so a partial load is still unloaded by after().
        self.loaded_fixtures.append(store)
        store.unload_fixtures()
        store.load_fixtures()

    def grab_fixtures(self) -> dict:
        """All loaded fixtures; later stores override earlier ones."""
        fixtures: dict = {}
        for store in self.loaded_fixtures:
            fixtures.update(store.get_fixtures())
        return fixtures

    def grab_fixture(self, name: str, index=None):
        """
        Return a loaded fixture, or one of its models when ``index`` is given.

        Raises:
            HarnessError: If the fixture is not loaded, or ``index`` is
                          given for a fixture that is not an ActiveFixture.
        """
        fixtures = self.grab_fixtures()
        if name not in fixtures:
            raise HarnessError(f"Fixture {name} is not loaded")
        fixture = fixtures[name]
        if index is None:
            return fixture
        if not isinstance(fixture, ActiveFixture):
            raise HarnessError(
                f"Fixture {name} is not an instance of ActiveFixture "
                "and can't be loaded with second parameter"
            )
        return fixture.get_model(index)

    # =====================================================================
    # Records
    # =====================================================================

    def _db(self):
        return self._application().get("db")

    @staticmethod
    def _check_model(model) -> None:
        try:
            sa.inspect(model)
        except NoInspectionAvailable as exc:
            raise HarnessError(f"{model!r} is not a mapped model class") from exc
        if not isinstance(model, type):
            raise HarnessError(f"{model!r} is not a mapped model class")

    def have_record(self, model, attributes: dict | None = None):
        """
        Insert a record and return its primary key.

        Raises:
            AssertionError: If the record could not be saved.
        """
        self._check_model(model)
        db = self._db()
        record = model()
        for key, value in (attributes or {}).items():
            setattr(record, key, value)
        try:
            db.session.add(record)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise AssertionError(f"Record {model.__name__} was not saved: {exc}") from exc

        identity = sa.inspect(record).identity
        if identity is not None and len(identity) == 1:
            return identity[0]
        return identity

    def grab_record(self, model, attributes: dict | None = None):
        """First record of ``model`` matching ``attributes``, or None."""
        self._check_model(model)
        statement = sa.select(model).filter_by(**(attributes or {}))
        return self._db().session.execute(statement).scalars().first()

    def see_record(self, model, attributes: dict | None = None):
        record = self.grab_record(model, attributes)
        if record is None:
            raise AssertionError(
                f"Couldn't find {model.__name__} with {_describe(attributes)}"
            )
        return record

    def dont_see_record(self, model, attributes: dict | None = None) -> None:
        record = self.grab_record(model, attributes)
        if record is not None:
            raise AssertionError(
                f"Unexpectedly managed to find {model.__name__} with {_describe(attributes)}"
            )

    def grab_component(self, name: str):
        return self._application().get(name)

    # =====================================================================
    # Requests and responses
    # =====================================================================

    def send_request(self, method: str, url: str, params: dict | None = None, files: dict | None = None, content=None) -> BrowserResponse:
        self._application()
        return self.client.request(
            method, url, params=params, files=files, headers=dict(self.headers), content=content
        )

    def am_on_page(self, url: str) -> BrowserResponse:
        return self.send_request("GET", url)

    def am_on_route(self, endpoint: str, **params) -> BrowserResponse:
        """Open the page of a Flask endpoint, e.g. ``am_on_route("posts.index")``."""
        self._application()
        return self.am_on_page(self.client.url_for(endpoint, **params))

    def send_ajax_get_request(self, url: str, params: dict | None = None) -> BrowserResponse:
        return self._ajax("GET", url, params)

    def send_ajax_post_request(self, url: str, params: dict | None = None) -> BrowserResponse:
        return self._ajax("POST", url, params)

    def _ajax(self, method, url, params):
        self._application()
        headers = {**self.headers, "X-Requested-With": "XMLHttpRequest"}
        return self.client.request(method, url, params=params, headers=headers)

    def grab_response(self) -> BrowserResponse:
        if self.client is None or self.client.response is None:
            raise HarnessError("No request has been sent yet.")
        return self.client.response

    def see_response_code_is(self, code: int) -> None:
        response = self.grab_response()
        if response.status_code != code:
            detail = f" ({response.exception!r})" if response.exception is not None else ""
            raise AssertionError(
                f"Expected HTTP status code {code}, got {response.status_code}{detail}"
            )

    def see_in_source(self, text: str) -> None:
        if text not in self.grab_response().text:
            raise AssertionError(f"Failed asserting that page source contains '{text}'")

    def dont_see_in_source(self, text: str) -> None:
        if text in self.grab_response().text:
            raise AssertionError(f"Failed asserting that page source does not contain '{text}'")

    def have_http_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def delete_header(self, name: str) -> None:
        self.headers.pop(name, None)

    def get_internal_domains(self) -> list[str]:
        self._application()
        return self.client.get_internal_domains()

    # =====================================================================
    # Cookies, session and users
    # =====================================================================

    def set_cookie(self, name: str, value) -> None:
        """Put a cookie into the browser, encoded as the app would."""
        self._application()
        self.client.set_cookie(name, self.client.hash_cookie_data(name, value))

    def grab_cookie(self, name: str):
        if self.client is None:
            return None
        return self.client.get_cookie(name)

    def reset_cookie(self, name: str) -> None:
        if self.client is not None:
            self.client.delete_cookie(name)

    def create_and_set_csrf_cookie(self, value: str) -> tuple[str, str]:
        """
        Store a raw CSRF token in the session.

        Returns:
            ``(field name, masked token)`` to submit with a form.
        """
        self._application()
        name = self.client.get_csrf_param_name()
        self.client.write_session(**{name: value})
        return name, self.client.generate_csrf_token()

    def have_in_session(self, key: str, value) -> None:
        self._application()
        self.client.write_session(**{key: value})

    def see_in_session(self, key: str, value=_MISSING) -> None:
        session = self.client.context.session if self.client is not None else {}
        if key not in session:
            raise AssertionError(f"Session has no key '{key}'")
        if value is not _MISSING and session[key] != value:
            raise AssertionError(
                f"Session key '{key}' is {session[key]!r}, expected {value!r}"
            )

    def am_logged_in_as(self, user) -> None:
        """Log a user in by primary key or identity object."""
        self._application()
        self.client.find_and_login_user(user)

    # =====================================================================
    # Emails
    # =====================================================================

    def grab_sent_emails(self) -> list:
        self._application()
        return self.client.get_emails()

    def see_email_is_sent(self, num: int | None = None) -> None:
        emails = self.grab_sent_emails()
        if num is None:
            if not emails:
                raise AssertionError("Failed asserting that emails were sent")
        elif len(emails) != num:
            raise AssertionError(
                f"Failed asserting that {num} emails were sent, got {len(emails)}"
            )

    def dont_see_email_is_sent(self) -> None:
        self.see_email_is_sent(0)

    def grab_last_sent_email(self):
        self.see_email_is_sent()
        return self.grab_sent_emails()[-1]

    # =====================================================================
    # Multiple browser sessions
    # =====================================================================

    def initialize_session(self) -> None:
        """Start a brand-new browser session."""
        self.client.restart()
        self.headers = {}
        self._recreate_user()

    def backup_session(self) -> SessionSnapshot:
        """
        Snapshot the current browser session.

        Raises:
            HarnessError: If the application keeps sessions in a backend
                          other than the default signed cookie.
        """
        application = self.client.app
        if application is not None:
            interface = application.get("session", throw=False)
            if interface is not None and not isinstance(interface, SecureCookieSessionInterface):
                raise HarnessError(
                    "Multiple sessions are only supported with Flask's default "
                    f"cookie session, not {type(interface).__name__}."
                )
        return SessionSnapshot(
            client_context=self.client.get_context(),
            headers=dict(self.headers),
            cookies=dict(self.client.context.cookies),
            session=copy.deepcopy(self.client.context.session),
        )

    def load_session(self, snapshot: SessionSnapshot) -> None:
        """Restore a snapshot taken by ``backup_session()``."""
        self.client.set_context(snapshot.client_context)
        self.headers = dict(snapshot.headers)
        self.client.context.cookies = dict(snapshot.cookies)
        self.client.context.session = copy.deepcopy(snapshot.session)
        self._recreate_user()

    def close_session(self, snapshot: SessionSnapshot | None = None) -> None:
        if snapshot is None:
            self.initialize_session()

    @contextmanager
    def session_as(self, name: str):
        """
        Act as another simulated user inside the block.

        The named session is remembered for later blocks in the same
        test; the previous session is restored on exit.
        """
        current = self.backup_session()
        snapshot = self._sessions.get(name)
        if snapshot is None:
            self.initialize_session()
        else:
            self.load_session(snapshot)
        try:
            yield self
        finally:
            self._sessions[name] = self.backup_session()
            self.load_session(current)

    def _recreate_user(self) -> None:
        application = self.client.app if self.client is not None else None
        if application is not None and application.has("user", True):
            application.set("user", application.get_components(True).get("user"))


def _describe(attributes) -> str:
    return json.dumps(attributes or {}, default=str, sort_keys=True)
