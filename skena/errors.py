"""Error taxonomy shared by the generation client, the stage and storage.

Only ``RateLimited`` and ``GenerationTimeout`` are retried (see
``skena.resilience``). ``MalformedResponse`` and ``ToolSideEffectFailure``
are absorbed inside the generation client and never reach callers.
"""

from __future__ import annotations


class SkenaError(RuntimeError):
    """Base class for every failure raised by this package."""


class GenerationError(SkenaError):
    """Raised when a generation provider cannot be reached or returns an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimited(GenerationError):
    """HTTP 429 or a quota-exceeded signal from the provider."""


class GenerationTimeout(GenerationError):
    """The call lost its race against the timer, or a poll loop ran out of attempts."""


class MissingCredential(GenerationError):
    """No API key configured for the selected provider. Never retried."""


class MalformedResponse(GenerationError):
    """The response envelope did not have the expected shape."""


class ToolSideEffectFailure(GenerationError):
    """A model-requested tool (image/video generation) failed."""


class StoreTransactionFailure(SkenaError):
    """A local store transaction failed and was rolled back."""


class PromptError(SkenaError):
    """Raised when a Handlebars template fails to compile or render."""


class StoryStateError(SkenaError):
    """An operation was attempted in a lifecycle phase that does not allow it."""
