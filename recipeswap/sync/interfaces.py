"""Collaborators a comment tree synchronizer is wired to.

The concrete implementations live in ``recipeswap.services``; tests supply
in-memory fakes.
"""

from typing import Any, Callable, Protocol

from pydantic import UUID4

from recipeswap.models.comment import Comment
from recipeswap.models.event import ChangeEvent
from recipeswap.models.notification import NotificationKind


class CommentStore(Protocol):
    async def fetch_top_level_comments(self, resource_id: UUID4) -> list[Comment]: ...

    async def fetch_replies(self, comment_id: UUID4) -> list[Comment]: ...

    async def fetch_like_count(self, comment_id: UUID4) -> int: ...

    async def fetch_liked_comment_ids(
        self, user_id: UUID4, comment_ids: list[UUID4]
    ) -> set[UUID4]: ...

    async def fetch_comment_page(
        self, resource_id: UUID4, page: int = 1, page_size: int = 20
    ) -> list[Comment]: ...

    async def create_comment(
        self,
        resource_id: UUID4,
        parent_id: UUID4 | None,
        author_id: UUID4,
        body: str,
    ) -> Comment: ...

    async def delete_comment(self, comment_id: UUID4) -> None: ...

    async def set_like(self, comment_id: UUID4, user_id: UUID4, liked: bool) -> None: ...


class ChangeFeed(Protocol):
    def subscribe(
        self, resource_id: UUID4, on_event: Callable[[ChangeEvent], None]
    ) -> Any: ...

    def unsubscribe(self, subscription: Any) -> None: ...


class Identity(Protocol):
    def current_user_id(self) -> UUID4 | None: ...


class NotificationSink(Protocol):
    async def notify(
        self,
        recipient_id: UUID4,
        kind: NotificationKind,
        reference_id: UUID4,
        from_user_id: UUID4,
    ) -> Any: ...
