"""
Routes for the posts blueprint.

Creating a post also writes an audit entry to the ``audit`` database and
emails the author, so one request touches two databases and the mailer.
"""

import logging

from flask import request
from flask_login import current_user, login_required
from flask_mail import Message

from sample_app.blueprints.posts import bp
from sample_app.extensions import db, mail
from sample_app.models import AuditEntry, Post

logger = logging.getLogger(__name__)


@bp.route("/")
def index():
    posts = db.session.execute(db.select(Post).order_by(Post.id)).scalars().all()
    return {"posts": [post.to_dict() for post in posts]}


@bp.route("/<int:post_id>")
def show(post_id: int):
    post = db.get_or_404(Post, post_id)
    return post.to_dict()


@bp.route("/", methods=["POST"])
@login_required
def create():
    """Create a post for the signed-in user."""
    title = request.form.get("title", "").strip()
    if not title:
        return {"error": "title is required"}, 422

    post = Post(title=title, body=request.form.get("body", ""), author_id=current_user.id)
    db.session.add(post)
    db.session.flush()
    db.session.add(AuditEntry(action=f"post.create:{post.id}"))
    db.session.commit()
    logger.info("Created post %s", post.id)

    mail.send(
        Message(
            subject=f"New post: {post.title}",
            recipients=[current_user.email],
            body=post.body,
        )
    )
    return post.to_dict(), 201
