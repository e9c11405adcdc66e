import asyncio

import pytest

from recipeswap.services.comment import FetchError
from recipeswap.sync.pager import CommentPager


@pytest.mark.unit
class TestCommentPager:
    @pytest.mark.asyncio
    async def test_loads_pages_newest_first(self, store, make_comment, resource_id):
        # Arrange
        comments = [store.add(make_comment(minutes=m)) for m in range(5)]
        pager = CommentPager(store, resource_id, page_size=2)

        # Act
        first = await pager.load_more()
        second = await pager.load_more()

        # Assert
        assert first == [comments[4], comments[3]]
        assert second == [comments[2], comments[1]]
        assert pager.page == 2
        assert pager.has_more is True

    @pytest.mark.asyncio
    async def test_short_page_ends_the_list(self, store, make_comment, resource_id):
        # Arrange
        for m in range(3):
            store.add(make_comment(minutes=m))
        pager = CommentPager(store, resource_id, page_size=2)

        # Act
        await pager.load_more()
        await pager.load_more()
        third = await pager.load_more()

        # Assert
        assert len(pager.comments) == 3
        assert pager.has_more is False
        assert third == []
        assert store.calls.count("fetch_comment_page") == 2

    @pytest.mark.asyncio
    async def test_empty_page_ends_the_list(self, store, make_comment, resource_id):
        # Arrange
        for m in range(2):
            store.add(make_comment(minutes=m))
        pager = CommentPager(store, resource_id, page_size=2)

        # Act
        await pager.load_more()
        await pager.load_more()

        # Assert
        assert pager.has_more is False
        assert pager.page == 1

    @pytest.mark.asyncio
    async def test_no_comments(self, store, resource_id):
        # Arrange
        pager = CommentPager(store, resource_id)

        # Act
        await pager.load_more()

        # Assert
        assert pager.is_empty
        assert pager.has_more is False

    @pytest.mark.asyncio
    async def test_failure_keeps_state_and_allows_retry(self, store, make_comment, resource_id):
        # Arrange
        comment = store.add(make_comment())
        store.failures["fetch_comment_page"] = FetchError("offline")
        pager = CommentPager(store, resource_id)

        # Act
        failed = await pager.load_more()
        retried = await pager.load_more()

        # Assert
        assert failed == []
        assert retried == [comment]
        assert pager.last_error is None
        assert pager.loading is False

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_recorded(self, store, resource_id):
        # Arrange
        store.failures["fetch_comment_page"] = ConnectionError("reset")
        pager = CommentPager(store, resource_id)

        # Act
        await pager.load_more()

        # Assert
        assert isinstance(pager.last_error, FetchError)
        assert pager.page == 0
        assert pager.has_more is True

    @pytest.mark.asyncio
    async def test_concurrent_load_is_ignored(self, store, make_comment, resource_id):
        # Arrange
        store.add(make_comment())
        gate = asyncio.Event()
        store.gates["fetch_comment_page"] = gate
        pager = CommentPager(store, resource_id)
        loading = asyncio.create_task(pager.load_more())
        await asyncio.sleep(0)

        # Act
        skipped = await pager.load_more()
        gate.set()
        loaded = await loading

        # Assert
        assert skipped == []
        assert len(loaded) == 1
        assert store.calls.count("fetch_comment_page") == 1

    @pytest.mark.asyncio
    async def test_duplicates_across_pages_are_skipped(self, store, make_comment, resource_id):
        # Arrange
        for m in range(4):
            store.add(make_comment(minutes=m))
        pager = CommentPager(store, resource_id, page_size=2)
        await pager.load_more()
        store.add(make_comment(minutes=10))

        # Act
        added = await pager.load_more()

        # Assert
        assert len(added) == 1
        assert len({c.comment_id for c in pager.comments}) == len(pager.comments) == 3

    def test_rejects_bad_page_size(self, store, resource_id):
        with pytest.raises(ValueError):
            CommentPager(store, resource_id, page_size=0)
