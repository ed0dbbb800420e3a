"""Depth-addressed directive entries and their resolution against history.

Depth counts back from the newest history message: depth 0 is the most
recent message, depth 1 the one before it, and so on.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from chatweave.compose.message import Role

logger = logging.getLogger(__name__)

# Numeric role codes used by directive producers
_ROLE_CODES = {0: Role.SYSTEM, 1: Role.USER, 2: Role.ASSISTANT}


def _parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    if isinstance(value, int):
        return _ROLE_CODES[value]
    return Role(value or Role.SYSTEM.value)


@dataclass
class DepthEntry:
    """Instructions addressed to a (depth, role) point in history.

    A SYSTEM entry is role-agnostic: it may land next to a message of any
    role at its depth.
    """

    depth: int
    role: Role = Role.SYSTEM
    instructions: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.depth < 0:
            raise ValueError(f"depth must be >= 0, got {self.depth}")
        self.role = _parse_role(self.role)


@dataclass
class DirectiveEntries:
    """Everything a directive source hands over for one composition."""

    depth_entries: list[DepthEntry] = field(default_factory=list)
    top_entries: list[str] = field(default_factory=list)
    bottom_entries: list[str] = field(default_factory=list)
    before_entries: list[str] = field(default_factory=list)
    after_entries: list[str] = field(default_factory=list)
    note_top_entries: list[str] = field(default_factory=list)
    note_bottom_entries: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DirectiveEntries:
        depth_entries = [
            DepthEntry(
                depth=int(item["depth"]),
                role=_parse_role(item.get("role", Role.SYSTEM.value)),
                instructions=[str(s) for s in item.get("instructions", [])],
            )
            for item in data.get("depth_entries", [])
        ]
        return cls(
            depth_entries=depth_entries,
            **{
                key: [str(s) for s in data.get(key, [])]
                for key in (
                    "top_entries",
                    "bottom_entries",
                    "before_entries",
                    "after_entries",
                    "note_top_entries",
                    "note_bottom_entries",
                )
            },
        )

    @property
    def has_banners(self) -> bool:
        return bool(self.top_entries or self.bottom_entries)


@dataclass
class InjectionEntry:
    depth: int
    role: Role
    instructions: list[str] = field(default_factory=list)
    consumed: bool = False


class InjectionResolver:
    """Matches depth entries to history messages, each entry at most once."""

    def __init__(self, entries: Iterable[DepthEntry] = ()) -> None:
        self._entries: dict[tuple[int, Role], InjectionEntry] = {}
        for entry in entries:
            key = (entry.depth, entry.role)
            existing = self._entries.get(key)
            if existing is None:
                self._entries[key] = InjectionEntry(entry.depth, entry.role, list(entry.instructions))
            else:
                existing.instructions.extend(entry.instructions)

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> list[InjectionEntry]:
        return list(self._entries.values())

    def _open(self, depth: int, role: Role) -> InjectionEntry | None:
        entry = self._entries.get((depth, role))
        if entry is None or entry.consumed:
            return None
        return entry

    def match(self, depth: int, role: Role) -> InjectionEntry | None:
        """Find the unconsumed entry for a history message.

        Tried in order: the exact (depth, role) key; a role-agnostic entry
        at the same depth; at depth 0 only, a role-agnostic entry authored at
        depth 1; finally any entry at the same depth.
        """
        entry = self._open(depth, role) or self._open(depth, Role.SYSTEM)
        if entry is None and depth == 0:
            entry = self._open(1, Role.SYSTEM)
        if entry is None:
            for candidate in self._entries.values():
                if candidate.depth == depth and not candidate.consumed:
                    entry = candidate
                    break
        return entry

    def consume(self, entry: InjectionEntry) -> None:
        entry.consumed = True
        logger.debug("Consumed directive at depth %d (%s)", entry.depth, entry.role)

    def pending_instructions(self, include_consumed: bool = False) -> list[str]:
        """Instructions left over after the history walk, in arrival order."""
        return [
            instruction
            for entry in self._entries.values()
            if include_consumed or not entry.consumed
            for instruction in entry.instructions
        ]
