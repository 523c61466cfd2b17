"""
Paging Boundary -- hand-off of call events to display and audio collaborators.

On every call, re-call and recall the flow engine emits a ``PageEvent``
carrying the patient's display name and the destination label of the calling
station.  This module fans those events out to registered sinks.  Rendering,
the chime and text-to-speech live in the sinks, outside the engine.

Delivery is best-effort: a failing sink is logged and reported in its
``PageDelivery`` result but never undoes the transition that produced the
page.  ``DisplayBoard`` is the in-process model of the public display: it
keeps the current banner for a fixed time and a short history of recent
calls.  Expiring a banner is purely presentational.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from attendflow.models import PageEvent

logger = logging.getLogger(__name__)

PageSink = Callable[[PageEvent], Union[None, Awaitable[None]]]


class PageDelivery:
    """Result of handing one page event to one sink."""

    def __init__(self, sink_name: str, event: PageEvent, delivered: bool, message: str = "") -> None:
        self.sink_name = sink_name
        self.event = event
        self.delivered = delivered
        self.message = message

    def __repr__(self) -> str:
        return (
            f"PageDelivery(sink='{self.sink_name}', encounter={self.event.encounter_id}, "
            f"delivered={self.delivered})"
        )


def announcement_text(event: PageEvent) -> str:
    """Sentence handed to the speech collaborator."""
    return f"Patient {event.patient_display_name}, please proceed to {event.destination_label}."


class PagingBoundary:
    """Fan-out of page events to external sinks."""

    def __init__(self) -> None:
        self._sinks: dict[str, PageSink] = {}

    def add_sink(self, name: str, sink: PageSink) -> None:
        if name in self._sinks:
            raise ValueError(f"Page sink '{name}' already registered.")
        self._sinks[name] = sink

    def remove_sink(self, name: str) -> None:
        self._sinks.pop(name, None)

    async def emit(self, event: PageEvent) -> list[PageDelivery]:
        """Hand ``event`` to every sink and report each attempt."""
        deliveries: list[PageDelivery] = []
        if not self._sinks:
            logger.debug("No page sinks registered; page for %s not delivered", event.encounter_id)
            return deliveries

        for name, sink in list(self._sinks.items()):
            try:
                result: Any = sink(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Page sink %s failed for encounter %s", name, event.encounter_id)
                deliveries.append(PageDelivery(name, event, delivered=False, message=str(exc)))
                continue
            deliveries.append(PageDelivery(name, event, delivered=True))
        return deliveries


class DisplayBoard:
    """The public display's view of recent calls.

    Register ``board.show`` as a page sink.  ``current_banner`` hides the
    banner once ``banner_seconds`` have passed; ``recent_calls`` keeps the
    last ``history_size`` calls, newest first, one entry per encounter.
    """

    def __init__(self, banner_seconds: int = 15, history_size: int = 5) -> None:
        self._banner_ttl = timedelta(seconds=banner_seconds)
        self._banner: Optional[PageEvent] = None
        self._history: deque[PageEvent] = deque(maxlen=history_size)

    def show(self, event: PageEvent) -> None:
        self._banner = event
        for previous in list(self._history):
            if previous.encounter_id == event.encounter_id:
                self._history.remove(previous)
        self._history.appendleft(event)

    def current_banner(self, now: datetime) -> Optional[PageEvent]:
        if self._banner is None:
            return None
        if now - self._banner.paged_at >= self._banner_ttl:
            return None
        return self._banner

    def dismiss(self) -> None:
        self._banner = None

    def recent_calls(self) -> list[PageEvent]:
        return list(self._history)
