"""
Task comment thread with optimistic echo.

Comments get their id on the client, so the local echo and the row later
reported by the change feed are recognized as the same comment and never
shown twice.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .change_feed import ChangeFeedClient, ChangeFilter, SubscriptionHandle
from .errors import FetchError, MutationError
from .models import ChangeEvent, ChangeOperation, Comment, FailureNotice, UserIdentity
from .persistence import Persistence, settle

logger = logging.getLogger(__name__)

COMMENTS_TABLE = "comments"


class CommentThread:
    """Live, optimistically updated comment list for one task."""

    def __init__(self, persistence: Persistence, feed: ChangeFeedClient, task_id: str,
                 identity: UserIdentity, *,
                 author_lookup: Optional[Callable[[str], Optional[str]]] = None,
                 mutation_timeout: Optional[float] = None,
                 schema: str = "public"):
        self.persistence = persistence
        self.feed = feed
        self.task_id = task_id
        self.identity = identity
        self.author_lookup = author_lookup
        self.mutation_timeout = mutation_timeout
        self.schema = schema
        self._comments: Dict[str, Comment] = {}
        self._unconfirmed: set = set()
        self._handle: Optional[SubscriptionHandle] = None
        self._listeners: List[Callable[[List[Comment]], None]] = []
        self._notice_listeners: List[Callable[[FailureNotice], None]] = []
        self._closed = False

    @property
    def comments(self) -> List[Comment]:
        return list(self._comments.values())

    def is_unconfirmed(self, comment_id: str) -> bool:
        return comment_id in self._unconfirmed

    def add_listener(self, callback: Callable[[List[Comment]], None]) -> None:
        self._listeners.append(callback)

    def add_notice_listener(self, callback: Callable[[FailureNotice], None]) -> None:
        self._notice_listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self.comments)
            except Exception:
                logger.exception("Comment listener failed")

    def _with_author(self, comment: Comment) -> Comment:
        if comment.author_name or self.author_lookup is None:
            return comment
        name = self.author_lookup(comment.user_id)
        return comment.model_copy(update={"author_name": name}) if name else comment

    def start(self) -> SubscriptionHandle:
        if self._handle is None:
            self._handle = self.feed.subscribe(
                f"comments:{self.task_id}",
                ChangeFilter.eq(COMMENTS_TABLE, "task_id", self.task_id,
                                event=ChangeOperation.INSERT.value, schema=self.schema),
                self.reconcile,
            )
        return self._handle

    async def load(self) -> List[Comment]:
        """
        Fetch the thread oldest first; unconfirmed local echoes are kept.

        Raises:
            FetchError: the comments could not be read
        """
        result = await settle(self.persistence.select(
            COMMENTS_TABLE, filters={"task_id": self.task_id}, order="created_at"))
        if not result.ok:
            raise FetchError(f"Could not load comments: {result.error.message}", code=result.error.code)
        if self._closed:
            return []
        loaded: Dict[str, Comment] = {}
        for row in result.data or []:
            try:
                comment = self._with_author(Comment.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed comment {row.get('id')}: {e}")
                continue
            loaded[comment.id] = comment
            self._unconfirmed.discard(comment.id)
        for comment_id in self._unconfirmed:
            loaded.setdefault(comment_id, self._comments[comment_id])
        self._comments = loaded
        self._notify()
        return self.comments

    def reconcile(self, event: ChangeEvent) -> bool:
        """Append a remotely inserted comment unless it is already shown."""
        if self._closed or event.operation is not ChangeOperation.INSERT:
            return False
        comment_id = event.row_id
        if comment_id is None or comment_id in self._comments:
            return False
        try:
            comment = self._with_author(Comment.model_validate(event.record))
        except ValidationError as e:
            logger.warning(f"Dropping malformed remote comment {comment_id}: {e}")
            return False
        if comment.task_id != self.task_id:
            return False
        self._comments[comment.id] = comment
        self._notify()
        return True

    async def send(self, content: str) -> Optional[Comment]:
        """
        Post a comment: shown immediately, removed again if the insert fails.

        Returns:
            The echoed comment, or None for blank content or a closed thread
        """
        if self._closed or not content or not content.strip():
            return None
        comment = Comment(
            id=str(uuid.uuid4()),
            task_id=self.task_id,
            user_id=self.identity.user_id,
            content=content,
            created_at=datetime.now(timezone.utc).isoformat(),
            author_name=self.identity.display_name,
        )
        self._comments[comment.id] = comment
        self._unconfirmed.add(comment.id)
        self._notify()

        result = await settle(self.persistence.insert(COMMENTS_TABLE, [{
            "id": comment.id,
            "task_id": comment.task_id,
            "user_id": comment.user_id,
            "content": comment.content,
            "created_at": comment.created_at,
        }]), self.mutation_timeout)
        if self._closed:
            return comment
        self._unconfirmed.discard(comment.id)
        if not result.ok:
            self._comments.pop(comment.id, None)
            self._notify()
            error = MutationError(f"Comment insert failed: {result.error.message}", code=result.error.code)
            notice = FailureNotice("Error", f"Failed to send: {result.error.message}", self.task_id, error)
            logger.warning(f"{notice.title}: {notice.message}")
            for callback in list(self._notice_listeners):
                try:
                    callback(notice)
                except Exception:
                    logger.exception("Failure notice listener failed")
        return comment

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._handle is not None:
            self.feed.unsubscribe(self._handle)
        self._listeners.clear()
        self._notice_listeners.clear()
