"""
Value objects exchanged between the harness and the connector.

``BrowserRequest`` and ``BrowserResponse`` are the application's
``request`` and ``response`` components: they describe the last request
the simulated browser sent and what came back.  ``RequestContext`` holds
the ambient per-browser state (cookies and the decoded session), and
``SessionSnapshot`` is a saved copy of that state used to switch between
several simulated users inside one test.
"""

import copy
import json
from dataclasses import dataclass, field

from werkzeug.datastructures import Headers

from testbed.exceptions import TransportError

REDIRECT_CODES = (301, 302, 303, 307, 308)


class BrowserRequest:
    """The request most recently sent by the simulated browser."""

    def __init__(self, server: dict | None = None):
        self.server = dict(server or {})
        self.clear()

    def clear(self) -> None:
        self.method = "GET"
        self.url = "/"
        self.params: dict = {}
        self.files: dict = {}
        self.headers: dict = {}
        self.content: bytes | str | None = None


class BrowserResponse:
    """
    The response to the most recent request.

    Attributes:
        status_code: HTTP status code; 500 when the application raised.
        headers:     Response headers.
        data:        Raw response body.
        url:         Absolute URL that produced this response.
        exception:   Exception raised by the application, if any.
    """

    def __init__(self):
        self.clear()

    def clear(self) -> None:
        self.status_code = 200
        self.headers = Headers()
        self.data = b""
        self.url: str | None = None
        self.exception: BaseException | None = None

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    @property
    def is_redirect(self) -> bool:
        return self.status_code in REDIRECT_CODES and "Location" in self.headers

    def get_json(self):
        return json.loads(self.text)

    def raise_for_exception(self) -> None:
        """Re-raise the application exception captured on this response."""
        if self.exception is not None:
            raise TransportError(
                f"The application raised {type(self.exception).__name__} "
                f"while serving {self.url}: {self.exception}"
            ) from self.exception


@dataclass
class RequestContext:
    """
    Ambient state of the simulated browser.

    ``cookies`` is the browser cookie jar in the Werkzeug test client's
    format: ``(domain, path, name)`` mapped to ``werkzeug.test.Cookie``.
    ``session`` is a read-only decoded view of the application session
    cookie, refreshed after each response.
    """

    cookies: dict = field(default_factory=dict)
    session: dict = field(default_factory=dict)
    get: dict = field(default_factory=dict)
    post: dict = field(default_factory=dict)
    files: dict = field(default_factory=dict)

    def reset(self) -> None:
        self.cookies.clear()
        self.session.clear()
        self.get.clear()
        self.post.clear()
        self.files.clear()


@dataclass
class SessionSnapshot:
    """Saved browser state of one simulated user."""

    client_context: dict
    headers: dict
    cookies: dict
    session: dict

    def copy(self) -> "SessionSnapshot":
        return copy.deepcopy(self)
