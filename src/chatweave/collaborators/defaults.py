"""Default collaborator implementations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from chatweave.collaborators.base import Placement
from chatweave.compose.injection import DirectiveEntries

_NAME_INVALID = re.compile(r"[^a-zA-Z0-9_-]")
_NAME_MAX = 64


@dataclass
class StaticCapabilities:
    """Fixed names and a fixed set of prompts the character switched off."""

    user_name: str = "User"
    char_name: str = ""
    disabled: set[str] = field(default_factory=set)

    def is_disabled(self, identifier: str) -> bool:
        return identifier in self.disabled


class IdentityTransform:
    """Leaves history text as it is."""

    def apply(
        self,
        text: str,
        placement: Placement,
        *,
        character_override: str | None = None,
        is_markdown: bool = False,
        is_prompt: bool = False,
        depth: int | None = None,
        is_edit: bool = False,
    ) -> str:
        return text


@dataclass
class StaticDirectiveSource:
    entries: DirectiveEntries = field(default_factory=DirectiveEntries)

    def collect(self) -> DirectiveEntries:
        return self.entries


def sanitize_name(name: str) -> str | None:
    """Make a speaker name safe for the structured `name` field.

    Providers accept 1-64 characters of [a-zA-Z0-9_-]; anything else becomes
    an underscore. Returns None when nothing usable is left.
    """
    cleaned = _NAME_INVALID.sub("_", name.strip())[:_NAME_MAX]
    if not cleaned.strip("_"):
        return None
    return cleaned
