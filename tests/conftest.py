import asyncio
from datetime import UTC, datetime, timedelta
from typing import Callable
from uuid import uuid4

import pytest
from pydantic import UUID4

from recipeswap.models.comment import Comment
from recipeswap.models.event import ChangeEvent, ChangeKind, EntityKind
from recipeswap.models.notification import NotificationKind
from recipeswap.services.comment import NotFoundError, WriteError
from recipeswap.services.realtime import RealtimeFeed
from recipeswap.sync.synchronizer import CommentTreeSynchronizer
from recipeswap.utils.logging import configure_logging

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


# Collaborator fakes
class InMemoryCommentStore:
    """Comment store kept in dicts, publishing to a feed like the real one.

    ``failures`` maps an operation name to an exception raised (once) on its
    next call; ``gates`` maps an operation name to an event the call waits
    on before doing anything.
    """

    def __init__(self, feed: RealtimeFeed | None = None) -> None:
        self.feed = feed
        self.comments: dict[UUID4, Comment] = {}
        self.likes: set[tuple[UUID4, UUID4]] = set()
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[str] = []
        self.clock = T0 + timedelta(days=1)

    def add(self, comment: Comment) -> Comment:
        self.comments[comment.comment_id] = comment
        return comment

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if gate := self.gates.get(operation):
            await gate.wait()
        if error := self.failures.pop(operation, None):
            raise error

    def _publish(self, resource_id, entity_kind, change_kind, before=None, after=None):
        if self.feed is not None:
            self.feed.publish(
                ChangeEvent(
                    resource_id=resource_id,
                    entity_kind=entity_kind,
                    change_kind=change_kind,
                    before=before,
                    after=after,
                )
            )

    async def fetch_top_level_comments(self, resource_id: UUID4) -> list[Comment]:
        await self._enter("fetch_top_level_comments")
        top_level = [
            c
            for c in self.comments.values()
            if c.resource_id == resource_id and c.parent_comment_id is None
        ]
        return sorted(top_level, key=lambda c: c.created_at, reverse=True)

    async def fetch_replies(self, comment_id: UUID4) -> list[Comment]:
        await self._enter("fetch_replies")
        replies = [c for c in self.comments.values() if c.parent_comment_id == comment_id]
        return sorted(replies, key=lambda c: c.created_at)

    async def fetch_like_count(self, comment_id: UUID4) -> int:
        await self._enter("fetch_like_count")
        return sum(1 for cid, _ in self.likes if cid == comment_id)

    async def fetch_liked_comment_ids(
        self, user_id: UUID4, comment_ids: list[UUID4]
    ) -> set[UUID4]:
        await self._enter("fetch_liked_comment_ids")
        return {cid for cid in comment_ids if (cid, user_id) in self.likes}

    async def fetch_comment_page(
        self, resource_id: UUID4, page: int = 1, page_size: int = 20
    ) -> list[Comment]:
        await self._enter("fetch_comment_page")
        ordered = sorted(
            (c for c in self.comments.values() if c.resource_id == resource_id),
            key=lambda c: c.created_at,
            reverse=True,
        )
        start = (page - 1) * page_size
        return ordered[start : start + page_size]

    async def create_comment(
        self, resource_id: UUID4, parent_id: UUID4 | None, author_id: UUID4, body: str
    ) -> Comment:
        await self._enter("create_comment")
        self.clock += timedelta(minutes=1)
        comment = self.add(
            Comment(
                comment_id=uuid4(),
                resource_id=resource_id,
                author_id=author_id,
                parent_comment_id=parent_id,
                body=body,
                created_at=self.clock,
            )
        )
        self._publish(
            resource_id,
            EntityKind.COMMENT,
            ChangeKind.INSERT,
            after=comment.model_dump(mode="json"),
        )
        return comment

    async def delete_comment(self, comment_id: UUID4) -> None:
        await self._enter("delete_comment")
        comment = self.comments.pop(comment_id, None)
        if comment is None:
            raise NotFoundError(f"Comment {comment_id} not found")
        for reply_id in [
            c.comment_id for c in self.comments.values() if c.parent_comment_id == comment_id
        ]:
            del self.comments[reply_id]
        self._publish(
            comment.resource_id,
            EntityKind.COMMENT,
            ChangeKind.DELETE,
            before={"comment_id": str(comment_id)},
        )

    async def set_like(self, comment_id: UUID4, user_id: UUID4, liked: bool) -> None:
        await self._enter("set_like")
        comment = self.comments.get(comment_id)
        if comment is None:
            raise WriteError(f"Comment {comment_id} not found")
        key = (comment_id, user_id)
        if liked == (key in self.likes):
            return
        row = {
            "comment_id": str(comment_id),
            "user_id": str(user_id),
            "resource_id": str(comment.resource_id),
        }
        if liked:
            self.likes.add(key)
            self._publish(comment.resource_id, EntityKind.LIKE_EDGE, ChangeKind.INSERT, after=row)
        else:
            self.likes.discard(key)
            self._publish(comment.resource_id, EntityKind.LIKE_EDGE, ChangeKind.DELETE, before=row)


class StaticIdentity:
    def __init__(self, user_id: UUID4 | None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> UUID4 | None:
        return self.user_id


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[UUID4, NotificationKind, UUID4, UUID4]] = []
        self.error: Exception | None = None

    async def notify(
        self,
        recipient_id: UUID4,
        kind: NotificationKind,
        reference_id: UUID4,
        from_user_id: UUID4,
    ) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((recipient_id, kind, reference_id, from_user_id))


@pytest.fixture(scope="session", autouse=True)
def logging_setup() -> None:
    configure_logging("DEBUG")


# Id fixtures
@pytest.fixture
def resource_id() -> UUID4:
    return uuid4()


@pytest.fixture
def test_user_id() -> UUID4:
    return uuid4()


@pytest.fixture
def another_user_id() -> UUID4:
    return uuid4()


@pytest.fixture
def recipe_author_id() -> UUID4:
    return uuid4()


# Test data fixtures
@pytest.fixture
def make_comment(resource_id: UUID4, another_user_id: UUID4) -> Callable[..., Comment]:
    def _make(
        minutes: int = 0,
        parent: UUID4 | None = None,
        author: UUID4 | None = None,
        body: str = "Tried this last night, great recipe!",
    ) -> Comment:
        return Comment(
            comment_id=uuid4(),
            resource_id=resource_id,
            author_id=author or another_user_id,
            parent_comment_id=parent,
            body=body,
            created_at=T0 + timedelta(minutes=minutes),
        )

    return _make


# Service fixtures
@pytest.fixture
def feed() -> RealtimeFeed:
    return RealtimeFeed()


@pytest.fixture
def store(feed: RealtimeFeed) -> InMemoryCommentStore:
    return InMemoryCommentStore(feed)


@pytest.fixture
def identity(test_user_id: UUID4) -> StaticIdentity:
    return StaticIdentity(test_user_id)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def synchronizer(
    store: InMemoryCommentStore,
    feed: RealtimeFeed,
    identity: StaticIdentity,
    notifier: RecordingNotifier,
) -> CommentTreeSynchronizer:
    return CommentTreeSynchronizer(store, feed, identity, notifier)
