from datetime import datetime

from pydantic import UUID4, BaseModel, ConfigDict


class LikeEdge(BaseModel):
    """Model representing a like on a comment.

    Existence is boolean per user per comment; the pair
    ``(comment_id, user_id)`` is unique.

    Attributes:
        comment_id: ID of the liked comment
        user_id: ID of the user who liked it
        resource_id: ID of the recipe the comment belongs to
        created_at: When the like was created
    """

    model_config = ConfigDict(frozen=True)

    comment_id: UUID4
    user_id: UUID4
    resource_id: UUID4
    created_at: datetime | None = None

    @property
    def key(self) -> tuple[UUID4, UUID4]:
        return self.comment_id, self.user_id
