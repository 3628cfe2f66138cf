"""
Harness configuration.

Options are accepted either in the camelCase names used by suite
configuration files (``configFile``, ``ignoreCollidingDSN``) or in their
snake_case attribute names.  ``HarnessConfig.apply()`` is the single entry
point for changing options, both when the harness is created and when a
test calls ``Harness.reconfigure()``.

The application configuration file is a plain Python file that defines a
``create_app()`` factory.  It may also define:

    APPLICATION_CLASS   Class (or dotted path) the booted app must be an
                        instance of.  Defaults to ``flask.Flask``.
    COMPONENTS          Mapping of component name to a factory taking the
                        Flask app.  Entries override the core components.
"""

import dataclasses
import importlib.util
import logging
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from urllib.parse import urlsplit

from flask import Flask
from werkzeug.utils import import_string

from testbed.exceptions import ConfigurationError

_logger = logging.getLogger(__name__)

# -- Clean methods for the request/response components ----------------------
CLEAN_CLEAR = "clear"
CLEAN_RECREATE = "recreate"
CLEAN_METHODS = (CLEAN_CLEAR, CLEAN_RECREATE)

# camelCase option name -> dataclass attribute.
OPTION_NAMES: dict[str, str] = {
    "configFile": "config_file",
    "applicationClass": "application_class",
    "entryUrl": "entry_url",
    "entryScript": "entry_script",
    "transaction": "transaction",
    "cleanup": "cleanup",
    "ignoreCollidingDSN": "ignore_colliding_dsn",
    "fixturesMethod": "fixtures_method",
    "responseCleanMethod": "response_clean_method",
    "requestCleanMethod": "request_clean_method",
    "recreateComponents": "recreate_components",
    "recreateApplication": "recreate_application",
    "closeSessionOnRecreateApplication": "close_session_on_recreate_application",
}
_OPTION_LABELS = {attribute: name for name, attribute in OPTION_NAMES.items()}


@dataclass
class HarnessConfig:
    """
    Typed view of the harness options.

    ``config_file`` falls back to the ``TESTBED_CONFIG_FILE`` environment
    variable so CI jobs can point a suite at a different application
    without editing ``conftest.py``.
    """

    config_file: str | None = field(
        default_factory=lambda: os.environ.get("TESTBED_CONFIG_FILE")
    )
    application_class: str | type | None = None
    entry_url: str = "http://localhost/index-test.php"
    entry_script: str = ""
    # None means "same as cleanup"; resolved by Harness.initialize().
    transaction: bool | None = True
    cleanup: bool = True
    ignore_colliding_dsn: bool = False
    fixtures_method: str = "_fixtures"
    response_clean_method: str = CLEAN_CLEAR
    request_clean_method: str = CLEAN_RECREATE
    recreate_components: list[str] = field(default_factory=list)
    recreate_application: bool = False
    close_session_on_recreate_application: bool = True

    @classmethod
    def from_mapping(cls, options: dict | None = None) -> "HarnessConfig":
        """Build a config from defaults plus ``options``."""
        config = cls()
        config.apply(options or {})
        return config

    def apply(self, options: dict) -> None:
        """
        Overlay ``options`` onto this config.

        Raises:
            ConfigurationError: If an option name is not recognised.
        """
        attributes = {f.name for f in dataclasses.fields(self)}
        for key, value in options.items():
            name = OPTION_NAMES.get(key, key)
            if name not in attributes:
                raise ConfigurationError(f"Unknown harness option '{key}'.", field=key)
            if name == "recreate_components" and value is not None:
                value = list(value)
            setattr(self, name, value)

    def validate(self) -> None:
        """
        Check every option before any resource is touched.

        All problems are collected and raised together so a broken suite
        configuration is fixed in one pass.

        Raises:
            ConfigurationError: Describing each invalid option.
        """
        errors: list[str] = []
        first_field: str | None = None

        def _fail(attribute: str, message: str) -> None:
            nonlocal first_field
            if first_field is None:
                first_field = _OPTION_LABELS[attribute]
            errors.append(message)

        # -- Application config file ---------------------------------------
        if not self.config_file:
            _fail("config_file", "Option 'configFile' is required.")
        elif not Path(self.config_file).is_file():
            _fail(
                "config_file",
                "The application config file does not exist: "
                f"{Path(self.config_file).resolve()}",
            )

        # -- Boolean switches ------------------------------------------------
        for attribute in (
            "cleanup",
            "ignore_colliding_dsn",
            "recreate_application",
            "close_session_on_recreate_application",
        ):
            if not isinstance(getattr(self, attribute), bool):
                _fail(attribute, f"Option '{_OPTION_LABELS[attribute]}' must be a boolean.")
        if self.transaction is not None and not isinstance(self.transaction, bool):
            _fail("transaction", "Option 'transaction' must be a boolean or None.")

        # -- Clean methods ---------------------------------------------------
        for attribute in ("response_clean_method", "request_clean_method"):
            if getattr(self, attribute) not in CLEAN_METHODS:
                _fail(
                    attribute,
                    f"Option '{_OPTION_LABELS[attribute]}' must be one of: "
                    f"{', '.join(CLEAN_METHODS)}.",
                )

        # -- Misc --------------------------------------------------------------
        if not isinstance(self.recreate_components, list) or not all(
            isinstance(name, str) for name in self.recreate_components
        ):
            _fail(
                "recreate_components",
                "Option 'recreateComponents' must be a list of component names.",
            )
        if not isinstance(self.fixtures_method, str) or not self.fixtures_method:
            _fail("fixtures_method", "Option 'fixturesMethod' must be a method name.")
        parts = urlsplit(self.entry_url or "")
        if parts.scheme not in ("http", "https") or not parts.hostname:
            _fail(
                "entry_url",
                f"Option 'entryUrl' must be an absolute http(s) URL, got '{self.entry_url}'.",
            )

        if errors:
            combined = "\n  - ".join(errors)
            raise ConfigurationError(
                f"Invalid harness configuration:\n  - {combined}", field=first_field
            )

    def copy(self) -> "HarnessConfig":
        return dataclasses.replace(
            self, recreate_components=list(self.recreate_components)
        )

    def as_dict(self) -> dict:
        """Options keyed by their camelCase names."""
        return {
            _OPTION_LABELS[f.name]: getattr(self, f.name)
            for f in dataclasses.fields(self)
        }

    def server_params(self) -> dict:
        """
        Front-controller environment derived from the entry URL.

        Returns:
            Dict with ``SCRIPT_FILENAME``, ``SCRIPT_NAME``, ``SERVER_NAME``,
            ``SERVER_PORT`` and ``HTTPS``.
        """
        parts = urlsplit(self.entry_url)
        https = parts.scheme == "https"
        script_name = self.entry_script or parts.path
        if script_name and not script_name.startswith("/"):
            script_name = "/" + script_name
        return {
            "SCRIPT_FILENAME": self.entry_script or posixpath.basename(parts.path),
            "SCRIPT_NAME": script_name.rstrip("/"),
            "SERVER_NAME": parts.hostname,
            "SERVER_PORT": str(parts.port or (443 if https else 80)),
            "HTTPS": https,
        }


# =========================================================================
# Application config file
# =========================================================================


def load_config_file(path: str) -> ModuleType:
    """
    Execute the application config file and return it as a module.

    The file is executed afresh on every call so each boot sees the
    current environment.

    Raises:
        ConfigurationError: If the file cannot be loaded or has no
                            ``create_app`` callable.
    """
    resolved = Path(path).resolve()
    if not resolved.is_file():
        raise ConfigurationError(
            f"The application config file does not exist: {resolved}",
            field="configFile",
        )
    module_name = f"_testbed_config_{resolved.stem}"
    spec = importlib.util.spec_from_file_location(module_name, resolved)
    if spec is None or spec.loader is None:
        raise ConfigurationError(
            f"Cannot load the application config file: {resolved}",
            field="configFile",
        )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    if not callable(getattr(module, "create_app", None)):
        raise ConfigurationError(
            f"The application config file {resolved} must define create_app().",
            field="configFile",
        )
    _logger.debug("Loaded application config file %s", resolved)
    return module


def resolve_application_class(value: str | type | None) -> type:
    """
    Resolve the expected application class.

    Args:
        value: A class, a dotted import path, or None for ``flask.Flask``.

    Raises:
        ConfigurationError: If the path cannot be imported or does not
                            name a class.
    """
    if value is None:
        return Flask
    if isinstance(value, str):
        try:
            value = import_string(value)
        except ImportError as exc:
            raise ConfigurationError(
                f"Application class '{value}' cannot be imported: {exc}",
                field="applicationClass",
            ) from exc
    if not isinstance(value, type):
        raise ConfigurationError(
            f"Application class must be a class, got {value!r}.",
            field="applicationClass",
        )
    return value
