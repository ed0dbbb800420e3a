"""Collaborator protocols and shared types.

Everything the composer needs from the outside world (token counting, macro
substitution, text transforms, per-character capabilities, directive lists)
is reached through these interfaces. Implementations may be plain callables
or coroutines; `invoke()` accepts both.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, Union, runtime_checkable

from chatweave.errors import CollaboratorFailure

if TYPE_CHECKING:
    from chatweave.compose.injection import DirectiveEntries

logger = logging.getLogger(__name__)

T = TypeVar("T")

# token_counter(role, content, name=None) -> int
TokenCounter = Callable[..., Union[int, Awaitable[int]]]

# substitute(text, user_name, char_name) -> text
MacroSubstituter = Callable[[str, str, str], Union[str, Awaitable[str]]]

# sanitize(name) -> name or None when nothing usable is left
NameSanitizer = Callable[[str], Union[str, None]]


class Placement(IntEnum):
    """Which side of the conversation a text transform is applied to."""

    USER_INPUT = 1
    AI_OUTPUT = 2


class NamesBehavior(str, Enum):
    """How speaker names reach the provider."""

    NONE = "none"
    DEFAULT = "default"
    COMPLETION = "completion"  # structured `name` field on each message
    CONTENT = "content"


@runtime_checkable
class TextTransform(Protocol):
    """Per-message rewrite applied to chat history content."""

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
    ) -> str | Awaitable[str]: ...


@runtime_checkable
class Capabilities(Protocol):
    """Per-character view of the active chat."""

    @property
    def user_name(self) -> str: ...

    @property
    def char_name(self) -> str: ...

    def is_disabled(self, identifier: str) -> bool:
        """True when the active character switched this prompt off."""
        ...


@runtime_checkable
class DirectiveSource(Protocol):
    """Supplies the status/choice directive lists for one composition."""

    def collect(self) -> DirectiveEntries | Awaitable[DirectiveEntries]: ...


async def invoke(collaborator: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a sync or async collaborator, wrapping any failure.

    Raises CollaboratorFailure carrying the original exception.
    """
    try:
        result = fn(*args, **kwargs)
        # Support both sync and async collaborators
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result
    except CollaboratorFailure:
        raise
    except Exception as e:
        logger.warning("%s raised: %s", collaborator, e)
        raise CollaboratorFailure(collaborator, e) from e
    return result
