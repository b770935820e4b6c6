"""Single-slot mailbox for director commands."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class DirectorMailbox:
    """Holds at most one unconsumed director command.

    ``post`` overwrites whatever is waiting (last write wins). ``take`` hands
    the command to exactly one consumer and empties the slot in the same
    step; there is no await between the read and the clear.
    """

    def __init__(self) -> None:
        self._command: str | None = None

    def post(self, command: str) -> None:
        command = command.strip()
        if not command:
            return
        if self._command is not None:
            logger.debug("director command %r replaced by %r", self._command, command)
        self._command = command

    def take(self) -> str | None:
        command, self._command = self._command, None
        return command

    def peek(self) -> str | None:
        return self._command

    @property
    def pending(self) -> bool:
        return self._command is not None
