"""Exception hierarchy for prompt composition."""

from __future__ import annotations


class CompositionError(Exception):
    """The prompt could not be built."""


class BudgetExceeded(CompositionError):
    """A reservation did not fit in the remaining token budget."""

    def __init__(self, identifier: str, cost: int, remaining: int) -> None:
        self.identifier = identifier
        self.cost = cost
        self.remaining = remaining
        super().__init__(
            f"'{identifier}' costs {cost} tokens but only {remaining} remain"
        )


class MissingIdentifier(CompositionError, KeyError):
    """Lookup of a prompt or group identifier failed."""

    def __init__(self, identifier: str, where: str = "assembler") -> None:
        self.identifier = identifier
        self.where = where
        super().__init__(f"'{identifier}' not found in {where}")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class InvalidHistoryRecord(CompositionError):
    """A chat history entry is missing its role or content."""

    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"history record {index}: {reason}")


class CollaboratorFailure(CompositionError):
    """An external collaborator (token counter, macros, transform) raised."""

    def __init__(self, collaborator: str, cause: BaseException) -> None:
        self.collaborator = collaborator
        self.cause = cause
        super().__init__(f"{collaborator} failed: {cause}")
