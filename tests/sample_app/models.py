"""
Models of the sample application.

``User`` and ``Post`` live in the main database; ``AuditEntry`` lives in
the separate ``audit`` bind so tests can exercise isolation across two
databases.
"""

from datetime import datetime, timezone

from flask_login import UserMixin

from sample_app.extensions import db


class User(UserMixin, db.Model):
    """Application user; ``UserMixin`` provides the Flask-Login API."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # -- Relationships -----------------------------------------------------
    posts = db.relationship("Post", back_populates="author", lazy="select")

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class Post(db.Model):
    """A post written by a user."""

    __tablename__ = "posts"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    title = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False, default="")
    author_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    author = db.relationship("User", back_populates="posts")

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "author_id": self.author_id}


class AuditEntry(db.Model):
    """Append-only audit trail kept in the ``audit`` database."""

    __bind_key__ = "audit"
    __tablename__ = "audit_entries"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    action = db.Column(db.String(100), nullable=False)
    created_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
