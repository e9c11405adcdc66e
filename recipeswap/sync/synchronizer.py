import asyncio
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

import structlog
from pydantic import UUID4

from recipeswap.models.comment import Comment, CommentCreate, CommentNode
from recipeswap.models.event import ChangeEvent
from recipeswap.models.notification import NotificationKind
from recipeswap.services.comment import (
    CommentError,
    DroppedEventError,
    FetchError,
    NotFoundError,
    WriteError,
)
from recipeswap.sync.interfaces import (
    ChangeFeed,
    CommentStore,
    Identity,
    NotificationSink,
)
from recipeswap.sync.tree import CommentTree

logger = structlog.get_logger(__name__)

Listener = Callable[["CommentTreeSynchronizer"], None]


class SyncStatus(str, Enum):
    """Lifecycle of a synchronizer.

    Attributes:
        IDLE: Never attached
        LOADING: Initial fetch in flight
        READY: Tree loaded and live events being applied
        ERROR: Initial fetch failed; see ``last_error``
        DETACHED: Torn down; the tree is empty
    """

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
    DETACHED = "detached"


def _as_error(error: Exception, kind: type[CommentError], message: str) -> CommentError:
    if isinstance(error, kind):
        return error
    return kind(f"{message}: {str(error)}")


class CommentTreeSynchronizer:
    """Keeps the comment thread of one recipe in sync for a single viewer.

    The tree is loaded once on :meth:`attach`, patched from the live change
    feed while attached, and changed optimistically by the current user's own
    actions before the store confirms them. A failed store call rolls its
    optimistic change back and raises the failure to the caller.

    All state changes happen on the event loop thread. Store results that
    arrive after :meth:`detach` (or after a later attach) are ignored.

    Attributes:
        store: Comment store to read from and write to
        feed: Realtime change feed
        identity: Provides the signed-in user
        notifier: Receives fire-and-forget notifications, optional
        resource_id: ID of the attached recipe
        resource_author_id: Author of the attached recipe, notified of new
            top-level comments
        status: Current lifecycle state
        last_error: Most recent fetch or write failure, for the UI to show
    """

    def __init__(
        self,
        store: CommentStore,
        feed: ChangeFeed,
        identity: Identity,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.identity = identity
        self.notifier = notifier
        self.resource_id: UUID4 | None = None
        self.resource_author_id: UUID4 | None = None
        self.status = SyncStatus.IDLE
        self.last_error: CommentError | None = None
        self._tree = CommentTree()
        self._subscription: Any = None
        self._generation = 0
        self._listeners: list[Listener] = []
        self._background: set[asyncio.Task] = set()
        self.logger = logger.bind(service="comment_synchronizer")

    @property
    def tree(self) -> list[CommentNode]:
        """Deep copy of the current forest, in display order."""
        return self._tree.snapshot()

    @property
    def comment_count(self) -> int:
        return self._tree.comment_count

    def find(self, comment_id: UUID4) -> CommentNode | None:
        node = self._tree.find(comment_id)
        return node.model_copy(deep=True) if node else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` after every state change.

        Returns:
            A function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                self.logger.exception("listener_failed")

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.resource_id is not None

    async def attach(
        self, resource_id: UUID4, resource_author_id: UUID4 | None = None
    ) -> None:
        """Load the thread of a recipe and start applying live changes.

        Args:
            resource_id: ID of the recipe
            resource_author_id: Author of the recipe, if known

        Raises:
            RuntimeError: If already attached or loading
            FetchError: If the initial load fails
        """
        if self._subscription is not None or self.status == SyncStatus.LOADING:
            raise RuntimeError("Synchronizer is already attached")

        self._generation += 1
        generation = self._generation
        self.resource_id = resource_id
        self.resource_author_id = resource_author_id
        self.status = SyncStatus.LOADING
        self.last_error = None
        self._tree.clear()
        self._changed()

        user_id = self.identity.current_user_id()
        try:
            top_level, replies_by_parent, like_counts, liked_ids = (
                await self._fetch_snapshot(resource_id, user_id)
            )
        except FetchError as e:
            if not self._is_current(generation):
                return
            self.status = SyncStatus.ERROR
            self.last_error = e
            self.logger.warning(
                "comment_load_failed", resource_id=str(resource_id), error=str(e)
            )
            self._changed()
            raise

        if not self._is_current(generation):
            self.logger.debug("stale_load_discarded", resource_id=str(resource_id))
            return

        self._tree.load(top_level, replies_by_parent, like_counts, liked_ids, user_id)
        self._subscription = self.feed.subscribe(resource_id, self._on_event)
        self.status = SyncStatus.READY
        self.logger.info(
            "comments_attached",
            resource_id=str(resource_id),
            comment_count=self._tree.comment_count,
        )
        self._changed()

    async def _fetch_snapshot(
        self, resource_id: UUID4, user_id: UUID4 | None
    ) -> tuple[list[Comment], dict[UUID4, list[Comment]], dict[UUID4, int], set[UUID4]]:
        try:
            top_level = await self.store.fetch_top_level_comments(resource_id)
            reply_lists = await asyncio.gather(
                *(self.store.fetch_replies(comment.comment_id) for comment in top_level)
            )
            replies_by_parent = {
                comment.comment_id: replies
                for comment, replies in zip(top_level, reply_lists)
            }
            comment_ids = [comment.comment_id for comment in top_level] + [
                reply.comment_id for replies in reply_lists for reply in replies
            ]
            counts = await asyncio.gather(
                *(self.store.fetch_like_count(comment_id) for comment_id in comment_ids)
            )
            liked_ids: set[UUID4] = set()
            if user_id is not None:
                liked_ids = await self.store.fetch_liked_comment_ids(user_id, comment_ids)
        except Exception as e:
            raise _as_error(e, FetchError, "Failed to load comments")
        return top_level, replies_by_parent, dict(zip(comment_ids, counts)), liked_ids

    def detach(self) -> None:
        """Stop applying live changes and drop the tree.

        Store calls still in flight complete but their results are ignored.
        """
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None
        self._generation += 1
        if self.resource_id is not None:
            self.logger.info("comments_detached", resource_id=str(self.resource_id))
        self.resource_id = None
        self.resource_author_id = None
        self._tree.clear()
        self.status = SyncStatus.DETACHED
        self._changed()

    def _on_event(self, event: ChangeEvent) -> None:
        if self._subscription is None or event.resource_id != self.resource_id:
            return
        try:
            self._tree.apply_event(event)
        except DroppedEventError as e:
            self.logger.info(
                "event_dropped",
                entity_kind=event.entity_kind.value,
                change_kind=event.change_kind.value,
                reason=str(e),
            )
            return
        self._changed()

    def _require_ready(self) -> UUID4:
        if self.status != SyncStatus.READY or self.resource_id is None:
            raise RuntimeError("Comments are not loaded")
        return self.resource_id

    async def refresh_identity(self) -> UUID4 | None:
        """Follow a sign-in or sign-out that happened after :meth:`attach`.

        When the signed-in user changed, their likes are fetched so that
        ``liked_by_me`` reflects the new user. Every write calls this first.

        Returns:
            The signed-in user, if any

        Raises:
            RuntimeError: If comments are not loaded, or were detached while
                the likes were loading
            FetchError: If the new user's likes cannot be loaded
        """
        self._require_ready()
        user_id = self.identity.current_user_id()
        if user_id == self._tree.current_user_id:
            return user_id

        liked_ids: set[UUID4] = set()
        if user_id is not None:
            generation = self._generation
            comment_ids = [node.comment_id for node in self._tree if not node.pending]
            try:
                liked_ids = await self.store.fetch_liked_comment_ids(user_id, comment_ids)
            except Exception as e:
                raise _as_error(e, FetchError, "Failed to load likes")
            if not self._is_current(generation):
                raise RuntimeError("Comments are not loaded")

        self._tree.set_current_user(user_id, liked_ids)
        self.logger.info(
            "identity_changed",
            resource_id=str(self.resource_id),
            signed_in=user_id is not None,
        )
        self._changed()
        return user_id

    async def _require_user(self) -> UUID4:
        user_id = await self.refresh_identity()
        if user_id is None:
            raise PermissionError("Sign in to interact with comments")
        return user_id

    async def post_comment(self, body: str) -> Comment:
        """Post a top-level comment on the attached recipe.

        Raises:
            PermissionError: If nobody is signed in
            pydantic.ValidationError: If the body is blank
            WriteError: If the store rejects the comment
        """
        resource_id = self._require_ready()
        author_id = await self._require_user()
        return await self._post(resource_id, None, author_id, body, self.resource_author_id)

    async def post_reply(self, parent_id: UUID4, body: str) -> Comment:
        """Reply to a top-level comment.

        Raises:
            PermissionError: If nobody is signed in
            ValueError: If the parent is not a confirmed top-level comment
            pydantic.ValidationError: If the body is blank
            WriteError: If the store rejects the reply
        """
        resource_id = self._require_ready()
        author_id = await self._require_user()
        parent = self._tree.find(parent_id)
        if parent is None or parent.parent_comment_id is not None:
            raise ValueError("Replies can only be added to top-level comments")
        if parent.pending:
            raise ValueError("Cannot reply to a comment that is still being posted")
        return await self._post(resource_id, parent_id, author_id, body, parent.author_id)

    async def _post(
        self,
        resource_id: UUID4,
        parent_id: UUID4 | None,
        author_id: UUID4,
        body: str,
        recipient_id: UUID4 | None,
    ) -> Comment:
        draft = CommentCreate(
            resource_id=resource_id,
            author_id=author_id,
            parent_comment_id=parent_id,
            body=body,
        )
        placeholder = Comment(
            comment_id=uuid4(), created_at=datetime.now(UTC), **draft.model_dump()
        )
        self._tree.insert(placeholder, pending=True)
        self._changed()

        generation = self._generation
        try:
            created = await self.store.create_comment(
                resource_id, parent_id, author_id, draft.body
            )
        except Exception as e:
            error = _as_error(e, WriteError, "Failed to post comment")
            self.logger.warning(
                "comment_post_failed", resource_id=str(resource_id), error=str(error)
            )
            if self._is_current(generation):
                self._tree.remove(placeholder.comment_id)
                self.last_error = error
                self._changed()
            raise error

        if self._is_current(generation):
            self._tree.remove(placeholder.comment_id)
            try:
                self._tree.insert(created)
            except DroppedEventError as e:
                self.logger.info("posted_reply_orphaned", reason=str(e))
            self._changed()

        if parent_id is None:
            self._notify(recipient_id, NotificationKind.COMMENT, resource_id, author_id)
        else:
            self._notify(recipient_id, NotificationKind.COMMENT_REPLY, parent_id, author_id)
        return created

    async def delete_comment(self, comment_id: UUID4) -> None:
        """Delete one of the current user's comments, with its replies.

        A comment that is already gone, locally or in the store, counts as
        deleted.

        Raises:
            PermissionError: If nobody is signed in or the user is not the author
            ValueError: If the comment is still being posted
            WriteError: If the store rejects the delete
        """
        self._require_ready()
        user_id = await self._require_user()
        node = self._tree.find(comment_id)
        if node is None:
            return
        if node.pending:
            raise ValueError("Cannot delete a comment that is still being posted")
        if node.author_id != user_id:
            raise PermissionError("Only the author can delete a comment")

        removal = self._tree.remove(comment_id)
        self._changed()

        generation = self._generation
        try:
            await self.store.delete_comment(comment_id)
        except NotFoundError:
            self.logger.info("comment_already_deleted", comment_id=str(comment_id))
            return
        except Exception as e:
            error = _as_error(e, WriteError, "Failed to delete comment")
            self.logger.warning(
                "comment_delete_failed", comment_id=str(comment_id), error=str(error)
            )
            if self._is_current(generation) and removal is not None:
                try:
                    self._tree.restore(removal)
                except DroppedEventError as restore_error:
                    self.logger.info("restore_dropped", reason=str(restore_error))
                self.last_error = error
                self._changed()
            raise error

    async def like(self, comment_id: UUID4) -> None:
        await self.set_like(comment_id, True)

    async def unlike(self, comment_id: UUID4) -> None:
        await self.set_like(comment_id, False)

    async def toggle_like(self, comment_id: UUID4) -> bool:
        """Flip the current user's like on a comment.

        Returns:
            Whether the comment is now liked
        """
        await self.refresh_identity()
        node = self._tree.find(comment_id)
        liked = not (node.liked_by_me if node else False)
        await self.set_like(comment_id, liked)
        return liked

    async def set_like(self, comment_id: UUID4, liked: bool) -> None:
        """Like or unlike a comment as the current user.

        Setting the state the comment is already known to be in does nothing.

        Raises:
            PermissionError: If nobody is signed in
            ValueError: If the comment is not loaded or still being posted
            WriteError: If the store rejects the change
        """
        self._require_ready()
        user_id = await self._require_user()
        node = self._tree.find(comment_id)
        if node is None:
            raise ValueError(f"Comment {comment_id} is not loaded")
        if node.pending:
            raise ValueError("Cannot like a comment that is still being posted")

        previous = self._tree.edge_state(comment_id, user_id)
        if previous is liked:
            return
        author_id = node.author_id
        delta = self._tree.apply_like(comment_id, user_id, liked)
        self._changed()

        generation = self._generation
        try:
            await self.store.set_like(comment_id, user_id, liked)
        except Exception as e:
            error = _as_error(e, WriteError, "Failed to update like")
            self.logger.warning(
                "like_failed", comment_id=str(comment_id), liked=liked, error=str(error)
            )
            if self._is_current(generation):
                self._tree.revert_like(comment_id, user_id, previous, delta)
                self.last_error = error
                self._changed()
            raise error

        if liked:
            self._notify(author_id, NotificationKind.COMMENT_LIKE, comment_id, user_id)

    def _notify(
        self,
        recipient_id: UUID4 | None,
        kind: NotificationKind,
        reference_id: UUID4,
        from_user_id: UUID4,
    ) -> None:
        if self.notifier is None or recipient_id is None or recipient_id == from_user_id:
            return
        task = asyncio.create_task(
            self._deliver(recipient_id, kind, reference_id, from_user_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _deliver(
        self,
        recipient_id: UUID4,
        kind: NotificationKind,
        reference_id: UUID4,
        from_user_id: UUID4,
    ) -> None:
        try:
            await self.notifier.notify(recipient_id, kind, reference_id, from_user_id)
        except Exception as e:
            self.logger.warning(
                "notification_failed",
                kind=kind.value,
                recipient_id=str(recipient_id),
                error=str(e),
            )

    async def flush_notifications(self) -> None:
        """Wait for notifications that are still being sent."""
        if self._background:
            await asyncio.gather(*list(self._background))
