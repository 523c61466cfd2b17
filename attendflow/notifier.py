"""
Change Notifier -- fan-out of committed store writes to subscribed stations.

Events identify the collection and row that changed; they deliberately carry
no field deltas.  Subscribers re-run their whole view rebuild on any event,
which keeps station code free of per-field merge logic.

A subscriber that raises is logged and skipped.  Delivery to the remaining
subscribers continues and the publisher never sees the error.
"""

from __future__ import annotations

import enum
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from attendflow.models import utcnow

logger = logging.getLogger(__name__)


class Collection(str, enum.Enum):
    ENCOUNTERS = "encounters"
    CHECKLIST_ITEMS = "checklist_items"
    VITALS = "vitals"
    NOTES = "notes"


class ChangeKind(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """One committed write to one row."""

    collection: Collection
    kind: ChangeKind
    entity_id: str
    encounter_id: str
    version: int = 0
    occurred_at: datetime = Field(default_factory=utcnow)


Handler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by ``ChangeNotifier.subscribe``."""

    def __init__(
        self,
        notifier: "ChangeNotifier",
        collections: frozenset[Collection],
        handler: Handler,
        name: str,
    ) -> None:
        self._notifier = notifier
        self.collections = collections
        self.handler = handler
        self.name = name
        self.active = True

    def unsubscribe(self) -> None:
        self._notifier._remove(self)
        self.active = False

    def __repr__(self) -> str:
        names = sorted(c.value for c in self.collections)
        return f"Subscription(name='{self.name}', collections={names}, active={self.active})"


class ChangeNotifier:
    """In-process publish/subscribe keyed by collection."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._delivered = 0
        self._failed = 0

    def subscribe(
        self,
        collections: Collection | list[Collection],
        handler: Handler,
        name: Optional[str] = None,
    ) -> Subscription:
        """Register ``handler`` for events on ``collections``.

        ``handler`` may be a plain function or a coroutine function.
        """
        if isinstance(collections, Collection):
            collections = [collections]
        sub = Subscription(
            self,
            frozenset(collections),
            handler,
            name or getattr(handler, "__qualname__", repr(handler)),
        )
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscriber.

        Returns:
            The number of subscribers that handled the event without error.
        """
        delivered = 0
        # Snapshot so handlers may (un)subscribe while we iterate.
        for sub in list(self._subscriptions):
            if event.collection not in sub.collections:
                continue
            try:
                result: Any = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._failed += 1
                logger.exception(
                    "Subscriber %s failed on %s %s/%s",
                    sub.name, event.kind.value, event.collection.value, event.entity_id,
                )
                continue
            delivered += 1
        self._delivered += delivered
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def stats(self) -> dict[str, int]:
        return {
            "subscribers": len(self._subscriptions),
            "delivered": self._delivered,
            "failed": self._failed,
        }
