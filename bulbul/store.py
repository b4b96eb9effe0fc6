# bulbul/store.py
import itertools
import logging
import os
import random
import string
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .assets import AssetStorage
from .errors import ValidationFailed
from .notifications import Notification
from .schemas import ImageUpload, Post, PostCreate, PostUpdate, Stats

logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], object]

_BASE36 = string.digits + string.ascii_lowercase


def _now():
    return datetime.now(timezone.utc)


def make_asset_name(original_filename: str) -> str:
    """``<epoch millis>-<random base36><ext>``, keeping the upload's extension."""
    ext = os.path.splitext(os.path.basename(original_filename or ""))[1].lower()
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}{ext}"


def _validate(model, fields):
    if isinstance(fields, model):
        return fields
    try:
        return model.model_validate(dict(fields or {}))
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationFailed("Invalid post data", errors=errors) from exc


class ContentStore:
    """In-memory posts with counters and their attached images.

    Every mutation runs under a single store-wide lock. Once a mutation is
    committed the notifier is called outside the lock; a failing notifier is
    logged and the mutation stands.
    """

    def __init__(self, assets: AssetStorage, notifier: Optional[Notifier] = None,
                 broadcast_views: bool = False):
        self.assets = assets
        self.notifier = notifier
        self.broadcast_views = broadcast_views
        self._posts: Dict[str, Post] = {}
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def _notify(self, notification: Notification):
        if self.notifier is None:
            return
        try:
            self.notifier(notification)
        except Exception:
            logger.exception("Broadcast of %s failed; mutation kept", notification.type.value)

    def list(self) -> List[Post]:
        with self._lock:
            posts = sorted(
                self._posts.values(),
                key=lambda p: (p.created_at, self._order[p.id]),
                reverse=True,
            )
            return [p.model_copy() for p in posts]

    def get(self, post_id: str) -> Optional[Post]:
        with self._lock:
            post = self._posts.get(post_id)
            return post.model_copy() if post else None

    def create(self, fields, image: Optional[ImageUpload] = None) -> Post:
        data = _validate(PostCreate, fields)
        with self._lock:
            image_url = image_file_name = None
            if image is not None:
                image_file_name = make_asset_name(image.filename)
                # StorageIO propagates; nothing has been stored yet
                image_url = self.assets.save(image.data, image_file_name)

            now = _now()
            post = Post(
                id=str(uuid.uuid4()),
                title=data.title,
                content=data.content,
                author=data.author,
                category=data.category,
                image_url=image_url,
                image_file_name=image_file_name,
                published=data.published,
                views=0,
                likes=0,
                created_at=now,
                updated_at=now,
            )
            self._posts[post.id] = post
            self._order[post.id] = next(self._seq)
            snapshot = post.model_copy()

        logger.info("Created post %s", snapshot.id)
        self._notify(Notification.created(snapshot))
        return snapshot

    def update(self, post_id: str, fields, image: Optional[ImageUpload] = None) -> Optional[Post]:
        data = _validate(PostUpdate, fields)
        changes = data.model_dump(exclude_unset=True)
        with self._lock:
            current = self._posts.get(post_id)
            if current is None:
                return None

            if image is not None:
                new_name = make_asset_name(image.filename)
                # the new blob must exist before the old one goes away
                new_url = self.assets.save(image.data, new_name)
                if current.image_file_name:
                    self._release(current.image_file_name)
                changes.update(image_url=new_url, image_file_name=new_name)

            changes["updated_at"] = _now()
            post = current.model_copy(update=changes)
            self._posts[post_id] = post
            snapshot = post.model_copy()

        logger.info("Updated post %s", post_id)
        self._notify(Notification.updated(snapshot))
        return snapshot

    def delete(self, post_id: str) -> bool:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return False
            if post.image_file_name:
                self._release(post.image_file_name)
            del self._posts[post_id]
            del self._order[post_id]

        logger.info("Deleted post %s", post_id)
        self._notify(Notification.deleted(post_id))
        return True

    def increment_views(self, post_id: str) -> None:
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return
            post.views += 1
            post.updated_at = _now()
            snapshot = post.model_copy()

        if self.broadcast_views:
            self._notify(Notification.updated(snapshot))

    def like(self, post_id: str) -> Optional[Post]:
        # increments on every call; per-session dedup lives in the client tracker
        with self._lock:
            post = self._posts.get(post_id)
            if post is None:
                return None
            post.likes += 1
            post.updated_at = _now()
            snapshot = post.model_copy()

        self._notify(Notification.liked(snapshot))
        return snapshot

    def stats(self) -> Stats:
        posts = self.list()
        return Stats(
            total_posts=len(posts),
            total_views=sum(p.views for p in posts),
            total_likes=sum(p.likes for p in posts),
        )

    def _release(self, name: str) -> None:
        try:
            self.assets.remove(name)
        except Exception:
            logger.exception("Could not release image %s", name)

    def __len__(self):
        return len(self._posts)
