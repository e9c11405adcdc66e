from uuid import uuid4

import pytest

from recipeswap.models.event import ChangeEvent, ChangeKind, EntityKind
from recipeswap.services.realtime import RealtimeFeed


def insert_event(resource_id) -> ChangeEvent:
    return ChangeEvent(
        resource_id=resource_id,
        entity_kind=EntityKind.COMMENT,
        change_kind=ChangeKind.INSERT,
        after={"comment_id": str(uuid4())},
    )


@pytest.mark.unit
class TestRealtimeFeed:
    def test_publish_reaches_only_matching_resource(self, feed: RealtimeFeed, resource_id):
        # Arrange
        received, elsewhere = [], []
        feed.subscribe(resource_id, received.append)
        feed.subscribe(uuid4(), elsewhere.append)
        event = insert_event(resource_id)

        # Act
        delivered = feed.publish(event)

        # Assert
        assert delivered == 1
        assert received == [event]
        assert elsewhere == []

    def test_unsubscribe_stops_delivery(self, feed: RealtimeFeed, resource_id):
        # Arrange
        received = []
        subscription = feed.subscribe(resource_id, received.append)

        # Act
        feed.unsubscribe(subscription)
        feed.publish(insert_event(resource_id))

        # Assert
        assert received == []
        assert feed.subscriber_count(resource_id) == 0

    def test_unsubscribe_unknown_handle_is_ignored(self, feed: RealtimeFeed, resource_id):
        # Arrange
        subscription = feed.subscribe(resource_id, lambda event: None)
        feed.unsubscribe(subscription)

        # Act & Assert
        feed.unsubscribe(subscription)
        assert feed.subscriber_count(resource_id) == 0

    def test_failing_subscriber_does_not_block_others(self, feed: RealtimeFeed, resource_id):
        # Arrange
        received = []

        def broken(event: ChangeEvent) -> None:
            raise RuntimeError("render crashed")

        feed.subscribe(resource_id, broken)
        feed.subscribe(resource_id, received.append)

        # Act
        delivered = feed.publish(insert_event(resource_id))

        # Assert
        assert delivered == 1
        assert len(received) == 1

    def test_subscriber_may_unsubscribe_during_delivery(self, feed: RealtimeFeed, resource_id):
        # Arrange
        received = []
        handles = {}

        def once(event: ChangeEvent) -> None:
            received.append(event)
            feed.unsubscribe(handles["once"])

        handles["once"] = feed.subscribe(resource_id, once)

        # Act
        feed.publish(insert_event(resource_id))
        feed.publish(insert_event(resource_id))

        # Assert
        assert len(received) == 1


@pytest.mark.unit
class TestChangeEvent:
    def test_delete_requires_before(self, resource_id):
        with pytest.raises(ValueError):
            ChangeEvent(
                resource_id=resource_id,
                entity_kind=EntityKind.COMMENT,
                change_kind=ChangeKind.DELETE,
            )

    def test_insert_requires_after(self, resource_id):
        with pytest.raises(ValueError):
            ChangeEvent(
                resource_id=resource_id,
                entity_kind=EntityKind.LIKE_EDGE,
                change_kind=ChangeKind.INSERT,
                before={"comment_id": str(uuid4())},
            )
