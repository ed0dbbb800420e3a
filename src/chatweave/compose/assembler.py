"""Ordered groups of messages under a token budget."""

from __future__ import annotations

import itertools
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chatweave.collaborators.base import TokenCounter
from chatweave.compose.budget import Budget
from chatweave.compose.message import Group, Message, Role
from chatweave.errors import BudgetExceeded, CollaboratorFailure, MissingIdentifier

if TYPE_CHECKING:
    from chatweave.compose.prompts import Prompt

logger = logging.getLogger(__name__)

# Banners keep their own message when system messages are squashed
SQUASH_EXCLUDED = frozenset({"newMainChat", "newChat"})


@dataclass
class _Entry:
    group: Group
    slot: float
    seq: int


class Assembler:
    """Top-level list of groups plus the budget they are charged against.

    Groups are ordered by the slot they were added at (their PromptStore
    index); groups sharing a slot keep registration order, and groups added
    without a slot follow every slotted group.
    """

    def __init__(self, budget: Budget) -> None:
        self.budget = budget
        self._entries: list[_Entry] = []
        self._seq = itertools.count()
        # Collected but not emitted; see Composer step 10
        self.absolute_prompts: list[Prompt] = []

    # ── Groups ────────────────────────────────────────────────

    def add(self, group: Group, index: int | None = None) -> None:
        """Register a group at a top-level slot, charging its cost.

        A group whose identifier already occupies the same slot is replaced
        and its cost returned to the budget.
        """
        slot = math.inf if index is None else index
        existing = self._find(group.identifier)
        if existing is not None and existing.slot == slot:
            delta = group.tokens - existing.group.tokens
            if delta > 0 and not self.budget.can_afford(delta):
                raise BudgetExceeded(group.identifier, delta, self.budget.remaining)
            self.budget.free(existing.group.tokens)
            self.budget.reserve(group.tokens, group.identifier)
            existing.group = group
            logger.debug("Replaced group %s at slot %s", group.identifier, index)
            return
        if existing is not None:
            logger.warning(
                "Group %s already registered at slot %s, adding another at %s",
                group.identifier, existing.slot, slot,
            )

        self.budget.reserve(group.tokens, group.identifier)
        entry = _Entry(group, slot, next(self._seq))
        position = len(self._entries)
        for i, other in enumerate(self._entries):
            if other.slot > slot:
                position = i
                break
        self._entries.insert(position, entry)
        logger.debug("Added group %s at slot %s (%d tokens)", group.identifier, index, group.tokens)

    def has(self, group_id: str) -> bool:
        return self._find(group_id) is not None

    def get(self, group_id: str) -> Group:
        entry = self._find(group_id)
        if entry is None:
            raise MissingIdentifier(group_id)
        return entry.group

    def groups(self) -> list[Group]:
        return [e.group for e in self._entries]

    def _find(self, group_id: str) -> _Entry | None:
        for entry in self._entries:
            if entry.group.identifier == group_id:
                return entry
        return None

    # ── Messages ──────────────────────────────────────────────

    def insert(self, message: Message, group_id: str, depth_from_end: int | None = None) -> None:
        """Insert into a group `depth_from_end` messages before its end.

        Appends when no depth is given. Empty messages are skipped.
        """
        group = self.get(group_id)
        if depth_from_end is None:
            position = len(group.messages)
        else:
            position = max(0, len(group.messages) - depth_from_end)
        self._place(message, group, position)

    def insert_at_start(self, message: Message, group_id: str) -> None:
        self._place(message, self.get(group_id), 0)

    def insert_at_end(self, message: Message, group_id: str) -> None:
        group = self.get(group_id)
        self._place(message, group, len(group.messages))

    def _place(self, message: Message, group: Group, position: int) -> None:
        if not message.content:
            logger.debug("Skipping empty message %s", message.identifier)
            return
        self.budget.reserve(message.tokens, message.identifier)
        group.messages.insert(position, message)

    def remove(self, group_id: str, identifier: str) -> Message | None:
        """Remove a message from a group and free its cost."""
        group = self.get(group_id)
        for i, message in enumerate(group.messages):
            if message.identifier == identifier:
                del group.messages[i]
                self.budget.free(message.tokens)
                return message
        return None

    # ── Budget shortcuts ──────────────────────────────────────

    def can_afford(self, message: Message) -> bool:
        return self.budget.can_afford(message.tokens)

    def can_afford_all(self, messages: list[Message]) -> bool:
        return self.budget.can_afford_all(m.tokens for m in messages)

    @property
    def total_tokens(self) -> int:
        return sum(e.group.tokens for e in self._entries)

    # ── Output ────────────────────────────────────────────────

    def messages(self) -> list[Message]:
        return [m for e in self._entries for m in e.group.messages]

    def get_chat(self) -> list[dict[str, str]]:
        """Flatten into the wire-ready list; empty messages are dropped."""
        return [m.to_dict() for m in self.messages() if m.content]

    async def squash_system_messages(self, token_counter: TokenCounter | None = None) -> None:
        """Merge consecutive unnamed system messages.

        Flattens every group into a single one; empty system messages are
        dropped and merged messages are recounted.
        """

        def squashable(message: Message) -> bool:
            return (
                message.role is Role.SYSTEM
                and not message.name
                and message.identifier not in SQUASH_EXCLUDED
            )

        squashed: list[Message] = []
        for message in self.messages():
            if message.role is Role.SYSTEM and not message.content:
                continue
            if squashed and squashable(message) and squashable(squashed[-1]):
                last = squashed[-1]
                last.content += "\n" + message.content
                try:
                    await last.recount(token_counter)
                except CollaboratorFailure as e:
                    logger.warning("Recount after squash failed for %s: %s", last.identifier, e)
                    last.tokens += message.tokens
                continue
            squashed.append(message)

        merged = len(self.messages()) - len(squashed)
        self._entries = [_Entry(Group("squashed", squashed), 0, next(self._seq))]
        logger.debug("Squashed %d system messages", merged)
