from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

import structlog
from neo4j import AsyncManagedTransaction
from pydantic import UUID4, ValidationError

from recipeswap.db import DatabaseManager
from recipeswap.models.comment import Comment, CommentCreate
from recipeswap.models.event import ChangeEvent, ChangeKind, EntityKind
from recipeswap.models.like import LikeEdge
from recipeswap.services.realtime import RealtimeFeed

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CommentError(Exception):
    """Base exception for comment-related errors."""

    pass


class FetchError(CommentError):
    """Exception raised when loading comments, replies or like counts fails."""

    pass


class WriteError(CommentError):
    """Exception raised when the store rejects a create, delete or like."""

    pass


class NotFoundError(CommentError):
    """Exception raised when a delete targets a comment that no longer exists."""

    pass


class DroppedEventError(CommentError):
    """Exception raised when a change references a comment the tree does not hold."""

    pass


class CommentService:
    """Neo4j-backed store for recipe comments and their like edges.

    Every successful write is published to the realtime feed so that all
    comment trees watching the same recipe see the change.

    Attributes:
        feed: Realtime feed that receives change events after writes
    """

    def __init__(self, feed: RealtimeFeed | None = None) -> None:
        self.feed = feed
        self.logger = logger.bind(service="comment_service")

    async def _read(
        self, work: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        db_manager = DatabaseManager()
        async with db_manager.driver.session(database=db_manager.database) as session:
            return await session.execute_read(work, *args)

    async def _write(
        self, work: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        db_manager = DatabaseManager()
        async with db_manager.driver.session(database=db_manager.database) as session:
            return await session.execute_write(work, *args)

    def _publish(
        self,
        resource_id: UUID4,
        entity_kind: EntityKind,
        change_kind: ChangeKind,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> None:
        if self.feed is None:
            return
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
        """Get the top-level comments on a recipe, newest first.

        Args:
            resource_id: ID of the recipe

        Returns:
            Comments without a parent, ordered by creation time descending

        Raises:
            FetchError: If the query fails
        """
        try:
            return await self._read(self._fetch_top_level_comments, resource_id)
        except Exception as e:
            raise FetchError(f"Failed to load comments: {str(e)}")

    async def _fetch_top_level_comments(
        self, tx: AsyncManagedTransaction, resource_id: UUID4
    ) -> list[Comment]:
        query = """
        MATCH (comment:Comment {resource_id: $resource_id})
        WHERE comment.parent_comment_id IS NULL
        RETURN comment {.*} AS comment
        ORDER BY comment.created_at DESC
        """
        result = await tx.run(query, resource_id=str(resource_id))
        return [Comment.model_validate(record["comment"]) async for record in result]

    async def fetch_replies(self, comment_id: UUID4) -> list[Comment]:
        """Get the replies to a comment, oldest first.

        Args:
            comment_id: ID of the parent comment

        Returns:
            Replies ordered by creation time ascending

        Raises:
            FetchError: If the query fails
        """
        try:
            return await self._read(self._fetch_replies, comment_id)
        except Exception as e:
            raise FetchError(f"Failed to load replies: {str(e)}")

    async def _fetch_replies(
        self, tx: AsyncManagedTransaction, comment_id: UUID4
    ) -> list[Comment]:
        query = """
        MATCH (reply:Comment {parent_comment_id: $comment_id})
        RETURN reply {.*} AS comment
        ORDER BY reply.created_at ASC
        """
        result = await tx.run(query, comment_id=str(comment_id))
        return [Comment.model_validate(record["comment"]) async for record in result]

    async def fetch_like_count(self, comment_id: UUID4) -> int:
        """Count the like edges on a comment.

        Raises:
            FetchError: If the query fails
        """
        try:
            return await self._read(self._fetch_like_count, comment_id)
        except Exception as e:
            raise FetchError(f"Failed to load like count: {str(e)}")

    async def _fetch_like_count(
        self, tx: AsyncManagedTransaction, comment_id: UUID4
    ) -> int:
        query = """
        MATCH (comment:Comment {comment_id: $comment_id})
        OPTIONAL MATCH (:User)-[like:LIKED]->(comment)
        RETURN count(like) AS like_count
        """
        result = await tx.run(query, comment_id=str(comment_id))
        if record := await result.single():
            return int(record["like_count"])
        return 0

    async def fetch_liked_comment_ids(
        self, user_id: UUID4, comment_ids: list[UUID4]
    ) -> set[UUID4]:
        """Find which of the given comments a user has liked.

        Args:
            user_id: ID of the user
            comment_ids: IDs of the comments to check

        Returns:
            The subset of ``comment_ids`` the user has liked

        Raises:
            FetchError: If the query fails
        """
        if not comment_ids:
            return set()
        try:
            return await self._read(self._fetch_liked_comment_ids, user_id, comment_ids)
        except Exception as e:
            raise FetchError(f"Failed to load like state: {str(e)}")

    async def _fetch_liked_comment_ids(
        self, tx: AsyncManagedTransaction, user_id: UUID4, comment_ids: list[UUID4]
    ) -> set[UUID4]:
        query = """
        MATCH (:User {user_id: $user_id})-[:LIKED]->(comment:Comment)
        WHERE comment.comment_id IN $comment_ids
        RETURN comment.comment_id AS comment_id
        """
        result = await tx.run(
            query,
            user_id=str(user_id),
            comment_ids=[str(cid) for cid in comment_ids],
        )
        liked = {record["comment_id"] async for record in result}
        return {cid for cid in comment_ids if str(cid) in liked}

    async def fetch_comment_page(
        self, resource_id: UUID4, page: int = 1, page_size: int = 20
    ) -> list[Comment]:
        """Get one page of all comments on a recipe, newest first.

        Args:
            resource_id: ID of the recipe
            page: 1-based page number
            page_size: Maximum number of comments per page

        Returns:
            The comments on the requested page, empty past the last page

        Raises:
            FetchError: If the query fails
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        try:
            return await self._read(
                self._fetch_comment_page, resource_id, (page - 1) * page_size, page_size
            )
        except Exception as e:
            raise FetchError(f"Failed to load comment page: {str(e)}")

    async def _fetch_comment_page(
        self, tx: AsyncManagedTransaction, resource_id: UUID4, offset: int, limit: int
    ) -> list[Comment]:
        query = """
        MATCH (comment:Comment {resource_id: $resource_id})
        RETURN comment {.*} AS comment
        ORDER BY comment.created_at DESC
        SKIP $offset
        LIMIT $limit
        """
        result = await tx.run(
            query, resource_id=str(resource_id), offset=offset, limit=limit
        )
        return [Comment.model_validate(record["comment"]) async for record in result]

    async def create_comment(
        self,
        resource_id: UUID4,
        parent_id: UUID4 | None,
        author_id: UUID4,
        body: str,
    ) -> Comment:
        """Create a comment on a recipe, or a reply when ``parent_id`` is set.

        Args:
            resource_id: ID of the recipe
            parent_id: ID of the comment being replied to, if any
            author_id: ID of the authoring user
            body: The comment text

        Returns:
            The stored comment with its assigned id and timestamp

        Raises:
            WriteError: If the body is blank, the parent does not exist or
                the write fails
        """
        try:
            comment = CommentCreate(
                resource_id=resource_id,
                author_id=author_id,
                parent_comment_id=parent_id,
                body=body,
            )
        except ValidationError as e:
            raise WriteError(f"Invalid comment: {str(e)}")

        try:
            created = await self._write(self._create_comment, comment)
        except CommentError:
            raise
        except Exception as e:
            raise WriteError(f"Failed to create comment: {str(e)}")

        self.logger.info(
            "comment_created",
            comment_id=str(created.comment_id),
            resource_id=str(resource_id),
            is_reply=created.is_reply,
        )
        self._publish(
            resource_id,
            EntityKind.COMMENT,
            ChangeKind.INSERT,
            after=created.model_dump(mode="json"),
        )
        return created

    async def _create_comment(
        self, tx: AsyncManagedTransaction, comment: CommentCreate
    ) -> Comment:
        query = """
        OPTIONAL MATCH (parent:Comment {comment_id: $parent_comment_id})
        WITH parent
        WHERE $parent_comment_id IS NULL
            OR (parent IS NOT NULL AND parent.resource_id = $resource_id)
        CREATE (comment:Comment {
            comment_id: $comment_id,
            resource_id: $resource_id,
            author_id: $author_id,
            parent_comment_id: $parent_comment_id,
            body: $body,
            created_at: $current_time
        })
        FOREACH (_ IN CASE WHEN parent IS NULL THEN [] ELSE [1] END |
            CREATE (comment)-[:REPLY_TO]->(parent)
        )
        RETURN comment {.*} AS comment
        """
        parent_id = comment.parent_comment_id
        result = await tx.run(
            query,
            comment_id=str(uuid4()),
            resource_id=str(comment.resource_id),
            author_id=str(comment.author_id),
            parent_comment_id=str(parent_id) if parent_id else None,
            body=comment.body,
            current_time=datetime.now(UTC).isoformat(),
        )
        if record := await result.single():
            return Comment.model_validate(record["comment"])
        raise WriteError(f"Parent comment {parent_id} not found")

    async def delete_comment(self, comment_id: UUID4) -> None:
        """Delete a comment together with its replies and like edges.

        Args:
            comment_id: ID of the comment to delete

        Raises:
            NotFoundError: If the comment does not exist
            WriteError: If deletion fails
        """
        try:
            deleted = await self._write(self._delete_comment, comment_id)
        except CommentError:
            raise
        except Exception as e:
            raise WriteError(f"Failed to delete comment: {str(e)}")

        self.logger.info("comment_deleted", comment_id=str(comment_id))
        self._publish(
            deleted.resource_id,
            EntityKind.COMMENT,
            ChangeKind.DELETE,
            before=deleted.model_dump(mode="json"),
        )

    async def _delete_comment(
        self, tx: AsyncManagedTransaction, comment_id: UUID4
    ) -> Comment:
        query = """
        MATCH (comment:Comment {comment_id: $comment_id})
        OPTIONAL MATCH (reply:Comment {parent_comment_id: $comment_id})
        WITH comment, comment {.*} AS row, collect(reply) AS replies
        FOREACH (reply IN replies | DETACH DELETE reply)
        DETACH DELETE comment
        RETURN row AS comment
        """
        result = await tx.run(query, comment_id=str(comment_id))
        if record := await result.single():
            return Comment.model_validate(record["comment"])
        raise NotFoundError(f"Comment {comment_id} not found")

    async def set_like(self, comment_id: UUID4, user_id: UUID4, liked: bool) -> None:
        """Create or remove a user's like edge on a comment.

        Liking an already liked comment, or unliking one that is not liked,
        succeeds without publishing a change.

        Args:
            comment_id: ID of the comment
            user_id: ID of the user
            liked: True to like, False to unlike

        Raises:
            WriteError: If the comment does not exist or the write fails
        """
        work = self._create_like if liked else self._remove_like
        try:
            edge = await self._write(work, comment_id, user_id)
        except CommentError:
            raise
        except Exception as e:
            raise WriteError(f"Failed to update like: {str(e)}")

        if edge is None:
            return
        self.logger.info(
            "comment_liked" if liked else "comment_unliked",
            comment_id=str(comment_id),
            user_id=str(user_id),
        )
        row = edge.model_dump(mode="json")
        if liked:
            self._publish(edge.resource_id, EntityKind.LIKE_EDGE, ChangeKind.INSERT, after=row)
        else:
            self._publish(edge.resource_id, EntityKind.LIKE_EDGE, ChangeKind.DELETE, before=row)

    async def _create_like(
        self, tx: AsyncManagedTransaction, comment_id: UUID4, user_id: UUID4
    ) -> LikeEdge | None:
        """Returns the new edge, or None if the user already liked the comment."""
        query = """
        MATCH (comment:Comment {comment_id: $comment_id})
        MERGE (user:User {user_id: $user_id})
        WITH comment, user, EXISTS { (user)-[:LIKED]->(comment) } AS existed
        MERGE (user)-[like:LIKED]->(comment)
        ON CREATE SET like.created_at = $current_time
        RETURN existed, {
            comment_id: comment.comment_id,
            user_id: user.user_id,
            resource_id: comment.resource_id,
            created_at: like.created_at
        } AS like
        """
        result = await tx.run(
            query,
            comment_id=str(comment_id),
            user_id=str(user_id),
            current_time=datetime.now(UTC).isoformat(),
        )
        record = await result.single()
        if not record:
            raise WriteError(f"Comment {comment_id} not found")
        if record["existed"]:
            return None
        return LikeEdge.model_validate(record["like"])

    async def _remove_like(
        self, tx: AsyncManagedTransaction, comment_id: UUID4, user_id: UUID4
    ) -> LikeEdge | None:
        """Returns the removed edge, or None if there was nothing to remove."""
        query = """
        MATCH (user:User {user_id: $user_id})-[like:LIKED]->(comment:Comment {comment_id: $comment_id})
        WITH like, {
            comment_id: comment.comment_id,
            user_id: user.user_id,
            resource_id: comment.resource_id,
            created_at: like.created_at
        } AS row
        DELETE like
        RETURN row AS like
        """
        result = await tx.run(query, comment_id=str(comment_id), user_id=str(user_id))
        if record := await result.single():
            return LikeEdge.model_validate(record["like"])
        return None
