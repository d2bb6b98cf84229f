"""In-memory store of signed Nostr events with filter queries."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Iterable

from .types import NostrEvent, NostrFilter

logger = logging.getLogger(__name__)


def matches_filter(event: NostrEvent, flt: NostrFilter) -> bool:
    """Check a single event against a single NIP-01 filter.

    ``ids`` and ``authors`` match by prefix, everything else exactly.
    """
    ids = flt.get("ids")
    if ids is not None and not any(event["id"].startswith(i) for i in ids):
        return False

    authors = flt.get("authors")
    if authors is not None and not any(
        event["pubkey"].startswith(a) for a in authors
    ):
        return False

    kinds = flt.get("kinds")
    if kinds is not None and event["kind"] not in kinds:
        return False

    since = flt.get("since")
    if since is not None and event["created_at"] < since:
        return False

    until = flt.get("until")
    if until is not None and event["created_at"] > until:
        return False

    for key, values in flt.items():
        if not key.startswith("#") or len(key) != 2:
            continue
        tag_name = key[1]
        tag_values = {
            tag[1] for tag in event["tags"] if len(tag) >= 2 and tag[0] == tag_name
        }
        if not tag_values.intersection(values):  # type: ignore[arg-type]
            return False

    return True


def matches_filters(event: NostrEvent, filters: list[NostrFilter]) -> bool:
    """Union semantics: an empty filter list matches everything."""
    if not filters:
        return True
    return any(matches_filter(event, f) for f in filters)


class EventStore:
    """Append-only keyed store of events.

    All methods are synchronous so a reader on the same event loop never
    observes a partially applied mutation. New events are fanned out to
    listener queues returned by :meth:`listen`.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._events: dict[str, NostrEvent] = {}
        self._listeners: list[asyncio.Queue[NostrEvent]] = []
        self.path = path

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    # ───────────────────────── Mutations ─────────────────────────────────

    def add(self, event: NostrEvent) -> bool:
        """Store an event. Returns False when the id is already present."""
        if event["id"] in self._events:
            return False
        self._events[event["id"]] = event
        for queue in self._listeners:
            queue.put_nowait(event)
        return True

    def remove(self, event: NostrEvent | str) -> bool:
        event_id = event if isinstance(event, str) else event["id"]
        return self._events.pop(event_id, None) is not None

    def remove_many(self, event_ids: Iterable[str]) -> int:
        return sum(1 for event_id in event_ids if self.remove(event_id))

    def remove_by_filters(self, filters: NostrFilter | list[NostrFilter]) -> int:
        return self.remove_many([e["id"] for e in self.get_by_filters(filters)])

    def clear(self) -> None:
        self._events.clear()

    # ───────────────────────── Queries ─────────────────────────────────

    def has_event(self, event_id: str) -> bool:
        return event_id in self._events

    def get_event(self, event_id: str) -> NostrEvent | None:
        return self._events.get(event_id)

    def get_by_filters(
        self, filters: NostrFilter | list[NostrFilter]
    ) -> list[NostrEvent]:
        """Return a snapshot of the events matching any of ``filters``.

        The smallest ``limit`` across the filters is applied to the newest
        matches.
        """
        if isinstance(filters, dict):
            filters = [filters]

        matched = [e for e in self._events.values() if matches_filters(e, filters)]

        limits = [f["limit"] for f in filters if f.get("limit") is not None]
        if limits:
            matched.sort(key=lambda e: (e["created_at"], e["id"]), reverse=True)
            matched = matched[: min(limits)]
        return matched

    def get_timeline(
        self, filters: NostrFilter | list[NostrFilter]
    ) -> list[NostrEvent]:
        """Matching events, newest first."""
        return sorted(
            self.get_by_filters(filters),
            key=lambda e: (e["created_at"], e["id"]),
            reverse=True,
        )

    def stats(self) -> dict[str, int]:
        """Event counts per kind."""
        counts: dict[str, int] = {"total": len(self._events)}
        for event in self._events.values():
            key = f"kind_{event['kind']}"
            counts[key] = counts.get(key, 0) + 1
        return counts

    # ───────────────────────── Listeners ─────────────────────────────────

    def listen(self) -> asyncio.Queue[NostrEvent]:
        """Queue receiving every event added from now on."""
        queue: asyncio.Queue[NostrEvent] = asyncio.Queue()
        self._listeners.append(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue[NostrEvent]) -> None:
        if queue in self._listeners:
            self._listeners.remove(queue)

    # ───────────────────────── Persistence ─────────────────────────────────

    def load(self) -> int:
        """Load a JSON snapshot without notifying listeners."""
        if self.path is None or not self.path.exists():
            return 0
        try:
            events = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable event snapshot %s: %s", self.path, e)
            return 0
        loaded = 0
        for event in events:
            if event.get("id") and event["id"] not in self._events:
                self._events[event["id"]] = event
                loaded += 1
        logger.debug("Loaded %d events from %s", loaded, self.path)
        return loaded

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(list(self._events.values())))
        tmp.replace(self.path)
