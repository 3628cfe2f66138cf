"""
Fixtures for the sample application.

Primary keys are given explicitly so posts can refer to their authors.
"""

from testbed.fixtures import ActiveFixture, ArrayFixture, fixture_type
from sample_app.models import AuditEntry, Post, User


@fixture_type("sample.users")
class UserFixture(ActiveFixture):
    model_class = User
    rows = {
        "admin": {"id": 1, "email": "admin@sample.test", "name": "Admin"},
        "editor": {"id": 2, "email": "editor@sample.test", "name": "Editor"},
        "retired": {"id": 3, "email": "retired@sample.test", "name": "Retired", "is_active": False},
    }


class PostFixture(ActiveFixture):
    model_class = Post
    depends = [UserFixture]
    data_file = "data/posts.json"


class AuditFixture(ActiveFixture):
    model_class = AuditEntry
    rows = {}


class SettingsFixture(ArrayFixture):
    data_file = "data/settings.py"
