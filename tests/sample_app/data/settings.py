"""Static settings rows loaded by ``SettingsFixture``."""

DATA = {
    "site": {"name": "Sample", "locale": "en"},
    "mail": {"sender": "noreply@sample.test"},
}
