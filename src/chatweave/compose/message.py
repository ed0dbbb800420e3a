"""Messages, groups and the closed set of well-known section identifiers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from chatweave.collaborators.base import MacroSubstituter, TokenCounter, invoke
from chatweave.errors import InvalidHistoryRecord

if TYPE_CHECKING:
    from chatweave.compose.prompts import Prompt

logger = logging.getLogger(__name__)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    def __str__(self) -> str:
        return self.value


class Section(str, Enum):
    """Identifiers of the sections the composer knows by name."""

    WORLD_INFO_BEFORE = "worldInfoBefore"
    MAIN = "main"
    WORLD_INFO_AFTER = "worldInfoAfter"
    CHAR_DESCRIPTION = "charDescription"
    CHAR_PERSONALITY = "charPersonality"
    SCENARIO = "scenario"
    PERSONA_DESCRIPTION = "personaDescription"
    NSFW = "nsfw"
    JAILBREAK = "jailbreak"
    ENHANCE_DEFINITIONS = "enhanceDefinitions"
    BIAS = "bias"
    SUMMARY = "summary"
    AUTHORS_NOTE = "authorsNote"
    IMPERSONATE = "impersonate"
    QUIET_PROMPT = "quietPrompt"
    CHAT_HISTORY = "chatHistory"
    DIALOGUE_EXAMPLES = "dialogueExamples"
    CONTROL_PROMPTS = "controlPrompts"

    def __str__(self) -> str:
        return self.value


@dataclass
class Message:
    """One role-tagged, token-counted unit of content."""

    role: Role
    content: str = ""
    identifier: str = ""
    name: str | None = None
    tokens: int = 0

    @classmethod
    async def create(
        cls,
        role: Role | str,
        content: str,
        identifier: str,
        token_counter: TokenCounter | None = None,
        name: str | None = None,
    ) -> Message:
        """Build a message and count its tokens.

        Without a counter the cost is 0. Empty content is never counted.
        """
        message = cls(role=Role(role), content=content, identifier=identifier, name=name)
        await message.recount(token_counter)
        return message

    @classmethod
    async def from_prompt(
        cls,
        prompt: Prompt,
        token_counter: TokenCounter | None = None,
        substitute: MacroSubstituter | None = None,
        user_name: str = "",
        char_name: str = "",
    ) -> Message:
        content = prompt.content or ""
        if substitute and content:
            content = await invoke("macro substitution", substitute, content, user_name, char_name)
        return await cls.create(prompt.role, content, prompt.identifier, token_counter)

    async def recount(self, token_counter: TokenCounter | None) -> int:
        if token_counter is None or not self.content:
            self.tokens = 0
        else:
            kwargs = {"name": self.name} if self.name else {}
            self.tokens = int(
                await invoke("token counter", token_counter, self.role.value, self.content, **kwargs)
            )
        return self.tokens

    async def set_name(self, name: str, token_counter: TokenCounter | None = None) -> None:
        """Attach a speaker name; the name counts towards the cost."""
        self.name = name
        await self.recount(token_counter)

    def to_dict(self) -> dict[str, str]:
        out = {"role": self.role.value, "content": self.content}
        if self.name:
            out["name"] = self.name
        return out


@dataclass
class Group:
    """A named, ordered list of messages."""

    identifier: str
    messages: list[Message] = field(default_factory=list)

    @property
    def tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    def __len__(self) -> int:
        return len(self.messages)

    def has(self, identifier: str) -> bool:
        return any(m.identifier == identifier for m in self.messages)


@dataclass
class HistoryMessage:
    """One chat history record, oldest first in its list."""

    role: Role
    content: str
    name: str | None = None

    @classmethod
    def parse(cls, record: HistoryMessage | Mapping[str, Any], index: int) -> HistoryMessage:
        """Validate a raw history record.

        Raises InvalidHistoryRecord when the role is missing or unknown, the
        content is missing, or the name is not a string.
        """
        if isinstance(record, cls):
            return record
        if not isinstance(record, Mapping):
            raise InvalidHistoryRecord(index, f"expected a mapping, got {type(record).__name__}")
        role = record.get("role")
        content = record.get("content")
        if not role:
            raise InvalidHistoryRecord(index, "missing role")
        try:
            role = Role(role)
        except ValueError:
            raise InvalidHistoryRecord(index, f"unknown role {role!r}") from None
        if not isinstance(content, (str, type(None))):
            raise InvalidHistoryRecord(index, "content must be a string")
        if not content:
            raise InvalidHistoryRecord(index, "missing content")
        name = record.get("name")
        if name is not None and not isinstance(name, str):
            raise InvalidHistoryRecord(index, "name must be a string")
        return cls(role=role, content=content, name=name or None)
