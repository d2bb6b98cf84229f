"""Reduction of decrypted conversation events into ordered conversations."""

from __future__ import annotations

import logging
from typing import Iterable

from .types import ROOT_PREV_ID, Conversation, InnerEvent, Message

logger = logging.getLogger(__name__)

TITLE_LENGTH = 50
DEFAULT_TITLE = "New Conversation"


def make_title(text: str) -> str:
    text = " ".join(text.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text


def is_root(message: Message) -> bool:
    return not message.prev_id or message.prev_id == ROOT_PREV_ID


class ConversationAssembler:
    """Builds conversations from inner events linked by their ``e`` tag.

    ``apply`` is idempotent per event id. A message whose parent has not been
    observed yet is kept as an orphan and shows up as soon as the parent is
    applied. Messages are ordered by chain depth, then ``created_at``, then
    event id, so the result does not depend on delivery order.
    """

    def __init__(self) -> None:
        self._processed: set[str] = set()
        self._messages: dict[str, dict[str, Message]] = {}
        self._owner: dict[str, str] = {}
        self._cache: dict[str, Conversation] = {}

    def apply(self, inner: InnerEvent, event_id: str | None = None) -> bool:
        """Merge one inner event. Returns False if the id was already applied."""
        event_id = event_id or inner.id
        if event_id in self._processed:
            return False
        self._processed.add(event_id)

        message = Message(
            event_id=event_id,
            role=inner.role,
            content=inner.content,
            created_at=inner.created_at,
            prev_id=inner.prev_id,
            model_id=inner.model_id,
            sats_spent=inner.sats_spent,
        )
        self._messages.setdefault(inner.conversation_id, {})[event_id] = message
        self._owner[event_id] = inner.conversation_id
        self._cache.pop(inner.conversation_id, None)
        return True

    def is_processed(self, event_id: str) -> bool:
        return event_id in self._processed

    # ───────────────────────── Ordering ─────────────────────────────────

    def _depths(self, conversation_id: str) -> dict[str, int]:
        """Chain depth of every message that links back to a root."""
        messages = self._messages.get(conversation_id, {})
        depths: dict[str, int] = {}
        unlinked: set[str] = set()

        for start in messages:
            # Walk up to a known depth or a root, then number the chain back down
            chain: list[str] = []
            seen: set[str] = set()
            event_id = start
            base: int | None = None
            while True:
                if event_id in depths:
                    base = depths[event_id]
                    break
                message = messages.get(event_id)
                if message is None or event_id in unlinked or event_id in seen:
                    break
                if is_root(message):
                    depths[event_id] = base = 0
                    break
                chain.append(event_id)
                seen.add(event_id)
                event_id = message.prev_id or ""
            if base is None:
                unlinked.update(chain)
                continue
            for depth, event_id in enumerate(reversed(chain), start=base + 1):
                depths[event_id] = depth
        return depths

    def get(self, conversation_id: str) -> Conversation | None:
        """Assembled conversation, or None if nothing is linked yet."""
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached

        messages = self._messages.get(conversation_id, {})
        depths = self._depths(conversation_id)
        if not depths:
            return None

        ordered = sorted(
            (messages[event_id] for event_id in depths),
            key=lambda m: (depths[m.event_id], m.created_at, m.event_id),
        )
        first_user = next((m for m in ordered if m.role == "user"), ordered[0])
        conversation = Conversation(
            id=conversation_id, title=make_title(first_user.text), messages=ordered
        )
        self._cache[conversation_id] = conversation
        return conversation

    @property
    def conversations(self) -> list[Conversation]:
        """Conversations with at least one linked message, newest activity first."""
        built = [self.get(cid) for cid in self._messages]
        return sorted(
            (c for c in built if c is not None),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    def orphans(self, conversation_id: str) -> list[Message]:
        """Messages still waiting for an unobserved parent."""
        depths = self._depths(conversation_id)
        return [
            m
            for event_id, m in self._messages.get(conversation_id, {}).items()
            if event_id not in depths
        ]

    def siblings(self, conversation_id: str, event_id: str) -> list[Message]:
        """All versions sharing the parent of ``event_id``, oldest first."""
        messages = self._messages.get(conversation_id, {})
        message = messages.get(event_id)
        if message is None:
            return []
        parent = None if is_root(message) else message.prev_id
        return sorted(
            (
                m
                for m in messages.values()
                if (None if is_root(m) else m.prev_id) == parent
            ),
            key=lambda m: (m.created_at, m.event_id),
        )

    def active_branch(self, conversation_id: str) -> list[Message]:
        """Follow the latest version at every level from the newest root."""
        conversation = self.get(conversation_id)
        if conversation is None:
            return []
        children: dict[str | None, list[Message]] = {}
        for m in conversation.messages:
            children.setdefault(None if is_root(m) else m.prev_id, []).append(m)

        branch: list[Message] = []
        parent: str | None = None
        while parent in children:
            latest = children[parent][-1]
            branch.append(latest)
            parent = latest.event_id
        return branch

    # ───────────────────────── Removal ─────────────────────────────────

    def event_ids(self, conversation_id: str) -> list[str]:
        """Every applied event id of a conversation, orphans included."""
        return list(self._messages.get(conversation_id, {}))

    def remove_conversation(self, conversation_id: str) -> list[str]:
        """Drop a conversation. Its ids stay processed so relays cannot revive it."""
        removed = list(self._messages.pop(conversation_id, {}))
        for event_id in removed:
            self._owner.pop(event_id, None)
        self._cache.pop(conversation_id, None)
        return removed

    def remove_events(self, event_ids: Iterable[str]) -> int:
        removed = 0
        for event_id in event_ids:
            # Tombstone ids that have not arrived yet as well
            self._processed.add(event_id)
            conversation_id = self._owner.pop(event_id, None)
            if conversation_id is None:
                continue
            self._messages.get(conversation_id, {}).pop(event_id, None)
            self._cache.pop(conversation_id, None)
            if not self._messages.get(conversation_id):
                self._messages.pop(conversation_id, None)
            removed += 1
        return removed

    def clear(self) -> None:
        self._processed.clear()
        self._messages.clear()
        self._owner.clear()
        self._cache.clear()
