"""In-memory comment forest for one recipe.

Top-level comments are kept newest-first and each holds its replies
oldest-first. Every operation addresses nodes by id, never by position, so
applying the same logical change twice leaves the tree as it was after the
first application.
"""

from typing import Iterable, Iterator, NamedTuple
from uuid import UUID

from pydantic import UUID4, ValidationError

from recipeswap.models.comment import Comment, CommentNode
from recipeswap.models.event import ChangeEvent, ChangeKind, EntityKind
from recipeswap.models.like import LikeEdge
from recipeswap.services.comment import DroppedEventError

EdgeKey = tuple[UUID4, UUID4]


class Removal(NamedTuple):
    """What :meth:`CommentTree.remove` took out, enough to put it back.

    Attributes:
        node: The removed node, with its replies
        edges: Known like-edge states of the node and its replies
        unliked: Ids among them that were inserted with no likes
    """

    node: CommentNode
    edges: dict[EdgeKey, bool]
    unliked: set[UUID4]


class CommentTree:
    """A two-level forest of comment nodes.

    Like counts are guarded per ``(comment_id, user_id)`` edge: the tree
    remembers which edges it has already counted as present or absent, so a
    live event confirming an optimistic like or unlike is not applied twice.
    Edges the tree has never seen are assumed to be part of the counts it
    was loaded with, except on nodes added by :meth:`insert`, which start
    with no likes at all.

    Attributes:
        current_user_id: User whose likes drive ``liked_by_me`` on nodes
    """

    def __init__(self) -> None:
        self._roots: list[CommentNode] = []
        self._edges: dict[EdgeKey, bool] = {}
        self._unliked: set[UUID4] = set()
        self.current_user_id: UUID4 | None = None

    def __len__(self) -> int:
        return self.comment_count

    def __contains__(self, comment_id: object) -> bool:
        return isinstance(comment_id, UUID) and self.find(comment_id) is not None

    def __iter__(self) -> Iterator[CommentNode]:
        for root in self._roots:
            yield root
            yield from root.replies

    @property
    def comment_count(self) -> int:
        return len(self._roots) + sum(len(root.replies) for root in self._roots)

    def clear(self) -> None:
        self._roots = []
        self._edges = {}
        self._unliked = set()

    def load(
        self,
        top_level: Iterable[Comment],
        replies_by_parent: dict[UUID4, list[Comment]],
        like_counts: dict[UUID4, int] | None = None,
        liked_ids: Iterable[UUID4] = (),
        current_user_id: UUID4 | None = None,
    ) -> None:
        """Replace the whole forest with a fetched snapshot.

        Args:
            top_level: Top-level comments of the recipe
            replies_by_parent: Replies keyed by their top-level comment id
            like_counts: Like count per comment id; missing ids keep the
                comment's own ``like_count``
            liked_ids: Comment ids the current user has liked
            current_user_id: The signed-in user, if any
        """
        like_counts = like_counts or {}
        liked = set(liked_ids)
        seen: set[UUID4] = set()
        self.clear()
        self.current_user_id = current_user_id

        def make(comment: Comment) -> CommentNode:
            seen.add(comment.comment_id)
            return CommentNode.from_comment(
                comment,
                like_count=max(0, like_counts.get(comment.comment_id, comment.like_count)),
                liked_by_me=comment.comment_id in liked,
                replies=[],
            )

        roots: list[CommentNode] = []
        for comment in top_level:
            if comment.comment_id in seen or comment.parent_comment_id is not None:
                continue
            roots.append(make(comment))
        for root in roots:
            replies = [
                make(reply)
                for reply in replies_by_parent.get(root.comment_id, [])
                if reply.comment_id not in seen
                and reply.parent_comment_id == root.comment_id
            ]
            root.replies = sorted(replies, key=lambda node: node.created_at)
        self._roots = sorted(roots, key=lambda node: node.created_at, reverse=True)

        if current_user_id is not None:
            for node in self:
                self._edges[(node.comment_id, current_user_id)] = node.liked_by_me

    def find(self, comment_id: UUID4) -> CommentNode | None:
        for node in self:
            if node.comment_id == comment_id:
                return node
        return None

    def _locate(self, comment_id: UUID4) -> tuple[list[CommentNode], int] | None:
        for index, root in enumerate(self._roots):
            if root.comment_id == comment_id:
                return self._roots, index
            for reply_index, reply in enumerate(root.replies):
                if reply.comment_id == comment_id:
                    return root.replies, reply_index
        return None

    def _top_level(self, comment_id: UUID4) -> CommentNode | None:
        return next((root for root in self._roots if root.comment_id == comment_id), None)

    def _place(self, node: CommentNode) -> None:
        if node.parent_comment_id is None:
            # Newest first; a node sharing a timestamp goes ahead of the existing ones.
            index = next(
                (i for i, root in enumerate(self._roots) if root.created_at <= node.created_at),
                len(self._roots),
            )
            self._roots.insert(index, node)
            return

        parent = self._top_level(node.parent_comment_id)
        if parent is None:
            raise DroppedEventError(
                f"Parent comment {node.parent_comment_id} of {node.comment_id} is not loaded"
            )
        # Oldest first; a node sharing a timestamp goes after the existing ones.
        index = next(
            (i for i, reply in enumerate(parent.replies) if reply.created_at > node.created_at),
            len(parent.replies),
        )
        parent.replies.insert(index, node)

    def insert(self, comment: Comment, *, pending: bool = False) -> CommentNode | None:
        """Add a new comment with no likes and no replies.

        A confirmed comment takes the place of a pending node with the same
        author, parent and body, so a post whose live insert arrives before
        the store call returns is never shown twice.

        Args:
            comment: The comment to add
            pending: Mark the node as an unconfirmed optimistic insert

        Returns:
            The new node, or None if a node with the same id is already present

        Raises:
            DroppedEventError: If the comment is a reply whose parent is not a
                loaded top-level comment
        """
        if comment.comment_id in self:
            return None
        node = CommentNode.from_comment(
            comment, like_count=0, liked_by_me=False, pending=pending, replies=[]
        )
        self._place(node)
        self._unliked.add(node.comment_id)
        if not pending:
            self._claim_placeholder(node)
        return node

    def _claim_placeholder(self, node: CommentNode) -> None:
        placeholder = next(
            (
                other
                for other in self
                if other.pending
                and other.author_id == node.author_id
                and other.parent_comment_id == node.parent_comment_id
                and other.body == node.body
            ),
            None,
        )
        if placeholder is not None:
            self.remove(placeholder.comment_id)

    def update(self, comment: Comment) -> CommentNode:
        """Replace a node's mutable fields, keeping its position and children.

        Raises:
            DroppedEventError: If the comment is not in the tree
        """
        node = self.find(comment.comment_id)
        if node is None:
            raise DroppedEventError(f"Comment {comment.comment_id} is not loaded")
        node.body = comment.body
        return node

    def remove(self, comment_id: UUID4) -> Removal | None:
        """Take a node out of the tree; a top-level node takes its replies along.

        Returns:
            What was removed, or None if the comment was not in the tree
        """
        location = self._locate(comment_id)
        if location is None:
            return None
        container, index = location
        node = container.pop(index)
        removed_ids = {node.comment_id} | {reply.comment_id for reply in node.replies}
        edges = {key: state for key, state in self._edges.items() if key[0] in removed_ids}
        for key in edges:
            del self._edges[key]
        unliked = self._unliked & removed_ids
        self._unliked -= unliked
        return Removal(node=node, edges=edges, unliked=unliked)

    def restore(self, removal: Removal) -> None:
        """Put back a node taken out by :meth:`remove`.

        Raises:
            DroppedEventError: If the node is a reply whose parent is gone
        """
        if removal.node.comment_id in self:
            return
        self._place(removal.node)
        self._edges.update(removal.edges)
        self._unliked |= removal.unliked

    def edge_state(self, comment_id: UUID4, user_id: UUID4) -> bool | None:
        """Known state of a like edge: True present, False absent, None unknown."""
        state = self._edges.get((comment_id, user_id))
        if state is None and comment_id in self._unliked:
            return False
        return state

    def set_current_user(
        self, user_id: UUID4 | None, liked_ids: Iterable[UUID4] = ()
    ) -> None:
        """Switch the user whose likes drive ``liked_by_me``.

        Like edges already tracked for the user win over ``liked_ids``, which
        come from a fetch that may be older than the live events applied.

        Args:
            user_id: The newly signed-in user, or None when signed out
            liked_ids: Comment ids the new user has liked
        """
        liked = set(liked_ids)
        self.current_user_id = user_id
        for node in self:
            if user_id is None:
                node.liked_by_me = False
                continue
            key = (node.comment_id, user_id)
            if key not in self._edges and node.comment_id not in self._unliked:
                self._edges[key] = node.comment_id in liked
            node.liked_by_me = self.edge_state(node.comment_id, user_id) is True

    def apply_like(self, comment_id: UUID4, user_id: UUID4, liked: bool) -> int:
        """Record a like edge being created or removed.

        Returns:
            The change applied to the like count: 1, -1 or 0 when the edge
            was already in that state or the count was already zero

        Raises:
            DroppedEventError: If the comment is not in the tree
        """
        node = self.find(comment_id)
        if node is None:
            raise DroppedEventError(f"Like on comment {comment_id} which is not loaded")

        key = (comment_id, user_id)
        if self.edge_state(comment_id, user_id) is liked:
            return 0
        self._edges[key] = liked
        if user_id == self.current_user_id:
            node.liked_by_me = liked

        if liked:
            node.like_count += 1
            return 1
        if node.like_count == 0:
            return 0
        node.like_count -= 1
        return -1

    def revert_like(
        self,
        comment_id: UUID4,
        user_id: UUID4,
        previous_state: bool | None,
        delta: int,
    ) -> None:
        """Undo an :meth:`apply_like` given its prior edge state and returned delta."""
        node = self.find(comment_id)
        if node is None:
            return
        key = (comment_id, user_id)
        if previous_state is None:
            self._edges.pop(key, None)
        else:
            self._edges[key] = previous_state
        node.like_count = max(0, node.like_count - delta)
        if user_id == self.current_user_id:
            node.liked_by_me = previous_state is True

    def apply_event(self, event: ChangeEvent) -> None:
        """Apply one live change event.

        Deletes of comments that are not in the tree are ignored; the
        deleted row may carry nothing but its id.

        Raises:
            DroppedEventError: If the event references a comment or parent
                that is not loaded, or its row is malformed
        """
        row = event.row
        try:
            if event.entity_kind == EntityKind.LIKE_EDGE:
                if event.change_kind == ChangeKind.UPDATE:
                    return
                edge = LikeEdge.model_validate(row)
                self.apply_like(
                    edge.comment_id, edge.user_id, event.change_kind == ChangeKind.INSERT
                )
            elif event.change_kind == ChangeKind.DELETE:
                self.remove(UUID(str(row["comment_id"])))
            elif event.change_kind == ChangeKind.INSERT:
                self.insert(Comment.model_validate(row))
            else:
                self.update(Comment.model_validate(row))
        except (ValidationError, KeyError, ValueError) as e:
            raise DroppedEventError(f"Malformed {event.entity_kind.value} row: {str(e)}")

    def snapshot(self) -> list[CommentNode]:
        """Deep copies of the top-level nodes, in display order."""
        return [root.model_copy(deep=True) for root in self._roots]
