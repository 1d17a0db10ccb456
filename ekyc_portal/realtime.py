"""
Real-Time Change Feed
Per-table, per-predicate subscriptions receiving row-level INSERT/UPDATE/DELETE
notifications after each committed write.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .schemas import ChangeEvent, ChangeType

log = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


class Channel:
    """A single subscription. Rows match when every filter column is equal."""

    def __init__(self, feed: "ChangeFeed", name: str, table: str,
                 callback: ChangeCallback, filter: Optional[Dict[str, Any]] = None):
        self.feed = feed
        self.name = name
        self.table = table
        self.callback = callback
        self.filter = dict(filter or {})
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        row = event.old if event.event_type == ChangeType.DELETE else event.new
        return all(row.get(column) == value for column, value in self.filter.items())

    def unsubscribe(self) -> bool:
        return self.feed.remove_channel(self)

    def __repr__(self) -> str:
        return f"<Channel {self.name} table={self.table} filter={self.filter}>"


class ChangeFeed:
    """In-process change feed. Delivery is synchronous, in publish order, no buffering."""

    def __init__(self):
        self._channels: List[Channel] = []

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels)

    def channel(self, name: str, table: str, callback: ChangeCallback,
                filter: Optional[Dict[str, Any]] = None) -> Channel:
        channel = Channel(self, name, table, callback, filter)
        self._channels.append(channel)
        log.info(f"Realtime channel subscribed: {name} on {table} filter={channel.filter}")
        return channel

    def remove_channel(self, channel: Channel) -> bool:
        """Close a channel. Returns False when it was already closed."""
        if channel.closed:
            return False
        channel.closed = True
        if channel in self._channels:
            self._channels.remove(channel)
        log.info(f"Realtime channel removed: {channel.name}")
        return True

    def publish(self, table: str, event_type: ChangeType,
                new: Optional[Dict[str, Any]] = None,
                old: Optional[Dict[str, Any]] = None) -> int:
        """Deliver a change to every matching channel. Returns the number notified."""
        event = ChangeEvent(
            event_type=event_type,
            table=table,
            new=new or {},
            old=old or {},
            commit_timestamp=datetime.now(timezone.utc),
        )
        notified = 0
        for channel in list(self._channels):
            if not channel.matches(event):
                continue
            try:
                channel.callback(event)
                notified += 1
            except Exception:
                # A failing subscriber must not break the writer or other subscribers
                log.exception(f"Realtime subscriber {channel.name} failed on {event_type.value}")
        log.debug(f"Change {event_type.value} on {table} delivered to {notified} channel(s)")
        return notified
