from datetime import UTC, datetime

from pydantic import UUID4, BaseModel, ConfigDict, Field, field_validator


class CommentBase(BaseModel):
    """Base model for comment data.

    This model contains the fields shared by stored comments, comments being
    created and the nodes of the materialized comment tree.

    Attributes:
        resource_id: ID of the recipe the comment belongs to
        author_id: ID of the user who wrote the comment
        parent_comment_id: ID of the parent comment if this is a reply
        body: The text content of the comment
    """

    model_config = ConfigDict(frozen=True)

    resource_id: UUID4
    author_id: UUID4
    parent_comment_id: UUID4 | None = None
    body: str = Field(min_length=1)

    @field_validator("body")
    @classmethod
    def strip_body(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Comment body cannot be blank")
        return value

    @property
    def is_reply(self) -> bool:
        return self.parent_comment_id is not None


class CommentCreate(CommentBase):
    """Model for creating a new comment or reply.

    A reply is a CommentCreate with ``parent_comment_id`` set.
    """

    pass


class Comment(CommentBase):
    """Model representing a stored comment row.

    Attributes:
        comment_id: Unique identifier assigned by the store
        created_at: When the comment was created, used for ordering
        like_count: Number of like edges on the comment
    """

    comment_id: UUID4
    created_at: datetime
    like_count: int = Field(default=0, ge=0)

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class CommentNode(Comment):
    """A node of the materialized comment tree.

    Unlike stored comments, nodes are mutated in place as live events and
    optimistic mutations are applied. The rendering layer only receives deep
    copies of them.

    Attributes:
        liked_by_me: Whether the current user has liked this comment
        pending: True while the node is an unconfirmed optimistic insert
        replies: Replies in oldest-first order, only used on top-level nodes
    """

    model_config = ConfigDict(frozen=False, validate_assignment=True)

    liked_by_me: bool = False
    pending: bool = False
    replies: list["CommentNode"] = Field(default_factory=list)

    @classmethod
    def from_comment(cls, comment: Comment, **overrides) -> "CommentNode":
        return cls(**{**comment.model_dump(), **overrides})
