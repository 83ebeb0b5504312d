"""
Per-user posts: validated and sanitized on write, escaped for display on read.
"""

from __future__ import annotations

import logging
from typing import Callable

from app.db import Document, DocumentStore
from app.models import Post, PostView, UserInfo
from app.validators import escape_for_display, sanitize_for_storage, validate_post

logger = logging.getLogger(__name__)

POSTS_COLLECTION = "posts"


class PostValidationError(ValueError):
    """Post text was rejected by validation."""


class PostNotFound(LookupError):
    pass


class PostPermissionError(PermissionError):
    pass


def to_view(post: Post) -> PostView:
    """Attach the display-escaped text. Stored text was already sanitized."""
    return PostView(**post.model_dump(), text_html=escape_for_display(post.text))


class PostService:
    """CRUD over the posts collection, scoped to the owning user."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def create_post(self, user: UserInfo, text: str) -> Post:
        error = validate_post(text)
        if error:
            raise PostValidationError(error)

        doc_id = self._store.add(
            POSTS_COLLECTION,
            {
                "text": sanitize_for_storage(text),
                "user_id": user.uid,
                "user_email": user.email,
                "display_name": user.display_name,
                "public": False,
                "sanitized": True,
            },
        )
        logger.info("Post %s created by %s", doc_id, user.uid)

        doc = self._store.get(POSTS_COLLECTION, doc_id)
        if doc is None:
            raise PostNotFound(doc_id)
        return Post.model_validate(doc)

    def list_posts(self, user_id: str) -> list[Post]:
        """The user's posts, newest first."""
        docs = self._store.query(POSTS_COLLECTION, user_id=user_id)
        return _newest_first(docs)

    def delete_post(self, user: UserInfo, post_id: str) -> None:
        doc = self._store.get(POSTS_COLLECTION, post_id)
        if doc is None:
            raise PostNotFound(post_id)
        if doc.get("user_id") != user.uid:
            logger.warning("User %s tried to delete post %s they do not own", user.uid, post_id)
            raise PostPermissionError(post_id)

        self._store.delete(POSTS_COLLECTION, post_id)
        logger.info("Post %s deleted by %s", post_id, user.uid)

    def subscribe(self, user_id: str, callback: Callable[[list[Post]], None]) -> Callable[[], None]:
        """Receive the user's full post list now and after every change."""
        return self._store.subscribe(
            POSTS_COLLECTION,
            lambda docs: callback(_newest_first(docs)),
            user_id=user_id,
        )


def _newest_first(docs: list[Document]) -> list[Post]:
    posts = [Post.model_validate(doc) for doc in docs]
    return sorted(posts, key=lambda p: p.created_at, reverse=True)
