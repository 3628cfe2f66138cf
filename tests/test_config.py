"""
Tests for harness option handling and the application config file.
"""

import pytest
from flask import Flask

from testbed.config import (
    HarnessConfig,
    load_config_file,
    resolve_application_class,
)
from testbed.exceptions import ConfigurationError
from testbed.module import Harness

from conftest import CONFIG_FILE


class TestHarnessConfig:
    """Option parsing, validation and derived values."""

    def test_defaults(self, monkeypatch):
        """Defaults match the documented option table."""
        monkeypatch.delenv("TESTBED_CONFIG_FILE", raising=False)
        config = HarnessConfig()
        assert config.config_file is None
        assert config.entry_url == "http://localhost/index-test.php"
        assert config.transaction is True
        assert config.cleanup is True
        assert config.ignore_colliding_dsn is False
        assert config.fixtures_method == "_fixtures"
        assert config.response_clean_method == "clear"
        assert config.request_clean_method == "recreate"
        assert config.recreate_components == []
        assert config.recreate_application is False
        assert config.close_session_on_recreate_application is True

    def test_config_file_from_environment(self, monkeypatch):
        """TESTBED_CONFIG_FILE supplies the default config file."""
        monkeypatch.setenv("TESTBED_CONFIG_FILE", str(CONFIG_FILE))
        assert HarnessConfig().config_file == str(CONFIG_FILE)

    def test_camel_and_snake_case_names(self):
        """Options may be given in either naming style."""
        config = HarnessConfig.from_mapping(
            {"ignoreCollidingDSN": True, "recreate_application": True}
        )
        assert config.ignore_colliding_dsn is True
        assert config.recreate_application is True

    def test_unknown_option_rejected(self):
        """An unknown option name is rejected with its name."""
        with pytest.raises(ConfigurationError) as excinfo:
            HarnessConfig.from_mapping({"cleanUp": False})
        assert excinfo.value.field == "cleanUp"

    def test_missing_config_file_rejected(self, tmp_path):
        """validate() reports a config file that does not exist."""
        config = HarnessConfig.from_mapping({"configFile": str(tmp_path / "nope.py")})
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        assert excinfo.value.field == "configFile"
        assert "does not exist" in str(excinfo.value)

    def test_invalid_clean_method_rejected(self):
        """Clean methods other than clear and recreate are rejected."""
        config = HarnessConfig.from_mapping(
            {"configFile": str(CONFIG_FILE), "responseCleanMethod": "force_clear"}
        )
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        assert "clear, recreate" in str(excinfo.value)
        assert excinfo.value.field == "responseCleanMethod"

    def test_every_problem_reported_at_once(self):
        """All invalid options appear in a single error."""
        config = HarnessConfig.from_mapping(
            {"configFile": str(CONFIG_FILE), "cleanup": "yes", "entryUrl": "index.php"}
        )
        with pytest.raises(ConfigurationError) as excinfo:
            config.validate()
        message = str(excinfo.value)
        assert "'cleanup' must be a boolean" in message
        assert "'entryUrl' must be an absolute" in message

    def test_server_params_from_entry_url(self):
        """The front-controller environment is derived from entryUrl."""
        config = HarnessConfig()
        assert config.server_params() == {
            "SCRIPT_FILENAME": "index-test.php",
            "SCRIPT_NAME": "/index-test.php",
            "SERVER_NAME": "localhost",
            "SERVER_PORT": "80",
            "HTTPS": False,
        }

    def test_server_params_with_entry_script_and_https(self):
        """entryScript, the port and https are honoured."""
        config = HarnessConfig.from_mapping(
            {"entryUrl": "https://example.test:8443/app/index.php", "entryScript": "/app"}
        )
        params = config.server_params()
        assert params["SCRIPT_FILENAME"] == "/app"
        assert params["SCRIPT_NAME"] == "/app"
        assert params["SERVER_PORT"] == "8443"
        assert params["HTTPS"] is True

    def test_copy_is_independent(self):
        """A copy does not share mutable options with the original."""
        config = HarnessConfig.from_mapping({"recreateComponents": ["user"]})
        clone = config.copy()
        clone.recreate_components.append("db")
        assert config.recreate_components == ["user"]
        assert config != clone

    def test_as_dict_uses_option_names(self):
        """as_dict() is keyed by the documented option names."""
        options = HarnessConfig().as_dict()
        assert options["ignoreCollidingDSN"] is False
        assert "closeSessionOnRecreateApplication" in options


class TestHarnessInitialize:
    """Suite-start behaviour of the harness."""

    def test_invalid_options_fail_on_construction(self):
        """A harness with bad options cannot be built."""
        with pytest.raises(ConfigurationError):
            Harness({"configFile": str(CONFIG_FILE), "requestCleanMethod": "wipe"})

    def test_transaction_follows_cleanup(self):
        """transaction=None takes the value of cleanup."""
        harness = Harness({"configFile": str(CONFIG_FILE), "transaction": None, "cleanup": False})
        harness.initialize()
        assert harness.config.transaction is False

    def test_explicit_transaction_kept(self):
        """An explicit transaction option is not overridden."""
        harness = Harness({"configFile": str(CONFIG_FILE), "transaction": True, "cleanup": False})
        harness.initialize()
        assert harness.config.transaction is True


class TestConfigFile:
    """Loading the application config file."""

    def test_loads_factory(self):
        """The config file exposes its factory and components."""
        module = load_config_file(str(CONFIG_FILE))
        assert callable(module.create_app)
        assert "tracker" in module.COMPONENTS

    def test_file_without_factory_rejected(self, tmp_path):
        """A config file must define create_app()."""
        path = tmp_path / "broken_config.py"
        path.write_text("APPLICATION_CLASS = 'flask.Flask'\n", encoding="utf-8")
        with pytest.raises(ConfigurationError) as excinfo:
            load_config_file(str(path))
        assert "create_app()" in str(excinfo.value)

    def test_resolve_application_class(self):
        """Flask is the default; names and classes both resolve."""
        assert resolve_application_class(None) is Flask
        assert resolve_application_class("flask.Flask") is Flask
        assert resolve_application_class(Flask) is Flask

    def test_unimportable_application_class(self):
        """A dotted path that does not import is reported."""
        with pytest.raises(ConfigurationError) as excinfo:
            resolve_application_class("flask.NoSuchApp")
        assert excinfo.value.field == "applicationClass"
