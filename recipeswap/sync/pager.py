import structlog
from pydantic import UUID4

from recipeswap.models.comment import Comment
from recipeswap.services.comment import FetchError
from recipeswap.sync.interfaces import CommentStore

logger = structlog.get_logger(__name__)


class CommentPager:
    """Flat, newest-first list of a recipe's comments loaded page by page.

    Used where the full thread is not needed, e.g. a "load more" comment
    preview. Unlike the synchronizer it does not follow live changes.

    Attributes:
        store: Comment store to read pages from
        resource_id: ID of the recipe
        page_size: Number of comments requested per page
        comments: Comments loaded so far, without duplicates
        page: Number of pages loaded so far
        loading: True while a page request is in flight
        has_more: False once the store returned the last page
        last_error: The most recent failed page load
    """

    def __init__(self, store: CommentStore, resource_id: UUID4, page_size: int = 20) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.store = store
        self.resource_id = resource_id
        self.page_size = page_size
        self.comments: list[Comment] = []
        self.page = 0
        self.loading = False
        self.has_more = True
        self.last_error: FetchError | None = None
        self.logger = logger.bind(service="comment_pager", resource_id=str(resource_id))

    @property
    def is_empty(self) -> bool:
        return not self.comments and not self.loading

    async def load_more(self) -> list[Comment]:
        """Fetch the next page and append it.

        Does nothing while a page is loading or after the last page. A failed
        load is logged and recorded in ``last_error``; calling again retries
        the same page.

        Returns:
            The comments added by this call
        """
        if self.loading or not self.has_more:
            return []

        self.loading = True
        try:
            batch = await self.store.fetch_comment_page(
                self.resource_id, self.page + 1, self.page_size
            )
        except Exception as e:
            self.last_error = e if isinstance(e, FetchError) else FetchError(
                f"Failed to load comment page: {str(e)}"
            )
            self.logger.warning(
                "comment_page_failed", page=self.page + 1, error=str(self.last_error)
            )
            return []
        finally:
            self.loading = False

        self.last_error = None
        if not batch:
            self.has_more = False
            return []

        self.page += 1
        if len(batch) < self.page_size:
            self.has_more = False
        seen = {comment.comment_id for comment in self.comments}
        fresh = [comment for comment in batch if comment.comment_id not in seen]
        self.comments.extend(fresh)
        self.logger.debug("comment_page_loaded", page=self.page, added=len(fresh))
        return fresh
