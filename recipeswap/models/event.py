from enum import Enum
from typing import Any

from pydantic import UUID4, BaseModel, ConfigDict, model_validator


class EntityKind(str, Enum):
    """Kinds of rows carried by the realtime change feed.

    Attributes:
        COMMENT: A comment row
        LIKE_EDGE: A comment like edge
    """

    COMMENT = "comment"
    LIKE_EDGE = "like_edge"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A row-level change notification scoped to one recipe.

    Rows are plain mappings, the way the backend's realtime channel delivers
    them; they are validated into models when applied to a comment tree.

    Attributes:
        resource_id: ID of the recipe the change belongs to
        entity_kind: Which kind of row changed
        change_kind: Whether the row was inserted, updated or deleted
        before: The row before the change (deletes and updates)
        after: The row after the change (inserts and updates)
    """

    model_config = ConfigDict(frozen=True)

    resource_id: UUID4
    entity_kind: EntityKind
    change_kind: ChangeKind
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    @model_validator(mode="after")
    def check_payload(self) -> "ChangeEvent":
        if self.change_kind == ChangeKind.DELETE and self.before is None:
            raise ValueError("Delete events must carry the deleted row")
        if self.change_kind != ChangeKind.DELETE and self.after is None:
            raise ValueError(f"{self.change_kind.value} events must carry the new row")
        return self

    @property
    def row(self) -> dict[str, Any]:
        """The row the change is about: ``before`` for deletes, else ``after``."""
        if self.change_kind == ChangeKind.DELETE:
            return self.before or {}
        return self.after or {}
