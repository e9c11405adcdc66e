from datetime import datetime
from enum import Enum

from pydantic import UUID4, BaseModel, ConfigDict, Field


class NotificationKind(str, Enum):
    """Types of notifications raised by comment activity.

    Attributes:
        COMMENT: Someone commented on the recipient's recipe
        COMMENT_REPLY: Someone replied to the recipient's comment
        COMMENT_LIKE: Someone liked the recipient's comment
    """

    COMMENT = "comment"
    COMMENT_REPLY = "comment_reply"
    COMMENT_LIKE = "comment_like"


class Notification(BaseModel):
    """Comment activity addressed to one user.

    Attributes:
        notification_id: Unique identifier for the notification
        kind: Type of notification
        recipient_id: ID of the user receiving the notification
        from_user_id: ID of the user who triggered the notification
        reference_id: ID of the related recipe or comment
        is_read: Whether the recipient has seen it
        created_at: When the notification was created
    """

    model_config = ConfigDict(frozen=True)

    notification_id: UUID4 = Field(description="Unique identifier for the notification")
    kind: NotificationKind = Field(description="Type of notification")
    recipient_id: UUID4 = Field(description="ID of the user receiving the notification")
    from_user_id: UUID4 = Field(
        description="ID of the user who triggered the notification"
    )
    reference_id: UUID4 = Field(description="ID of the related recipe or comment")
    is_read: bool = Field(False, description="Whether the notification was seen")
    created_at: datetime = Field(description="When the notification was created")
