"""In-process realtime change feed.

Plays the role of the backend's realtime channel: store writes publish
row-level change events and every subscriber scoped to the same recipe
receives them.
"""

from collections import defaultdict
from typing import Callable
from uuid import uuid4

import structlog
from pydantic import UUID4, BaseModel, ConfigDict, Field

from recipeswap.models.event import ChangeEvent

logger = structlog.get_logger(__name__)


class Subscription(BaseModel):
    """Handle returned by :meth:`RealtimeFeed.subscribe`.

    Attributes:
        subscription_id: Unique identifier of the subscription
        resource_id: ID of the recipe whose changes are delivered
        on_event: Callback invoked with every matching event
    """

    model_config = ConfigDict(frozen=True)

    subscription_id: UUID4 = Field(default_factory=uuid4)
    resource_id: UUID4
    on_event: Callable[[ChangeEvent], None]


class RealtimeFeed:
    """Fan-out of change events to subscribers, keyed by recipe id."""

    def __init__(self) -> None:
        self._subscriptions: dict[UUID4, dict[UUID4, Subscription]] = defaultdict(
            dict
        )
        self.logger = logger.bind(service="realtime_feed")

    def subscribe(
        self, resource_id: UUID4, on_event: Callable[[ChangeEvent], None]
    ) -> Subscription:
        """Register a callback for change events on one recipe.

        Args:
            resource_id: ID of the recipe to watch
            on_event: Called synchronously with each event

        Returns:
            The subscription handle to pass to :meth:`unsubscribe`
        """
        subscription = Subscription(resource_id=resource_id, on_event=on_event)
        self._subscriptions[resource_id][subscription.subscription_id] = subscription
        self.logger.debug(
            "subscribed",
            resource_id=str(resource_id),
            subscription_id=str(subscription.subscription_id),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription. Unknown handles are ignored."""
        channel = self._subscriptions.get(subscription.resource_id)
        if not channel or subscription.subscription_id not in channel:
            self.logger.debug(
                "unsubscribe_unknown_handle",
                subscription_id=str(subscription.subscription_id),
            )
            return
        del channel[subscription.subscription_id]
        if not channel:
            del self._subscriptions[subscription.resource_id]
        self.logger.debug(
            "unsubscribed",
            resource_id=str(subscription.resource_id),
            subscription_id=str(subscription.subscription_id),
        )

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every subscriber of its recipe.

        A failing callback is logged and does not stop delivery to the
        remaining subscribers.

        Args:
            event: The change to deliver

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0
        for subscription in list(self._subscriptions.get(event.resource_id, {}).values()):
            try:
                subscription.on_event(event)
                delivered += 1
            except Exception:
                self.logger.exception(
                    "subscriber_failed",
                    subscription_id=str(subscription.subscription_id),
                    entity_kind=event.entity_kind.value,
                    change_kind=event.change_kind.value,
                )
        return delivered

    def subscriber_count(self, resource_id: UUID4) -> int:
        return len(self._subscriptions.get(resource_id, {}))
