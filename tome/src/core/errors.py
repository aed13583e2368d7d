"""
Tome - Error Taxonomy
======================

``ServiceUnavailable``
    Embedding / completion / vector index unreachable.  Callers degrade to
    mock or fallback behaviour; only the final generation call surfaces,
    through ``CompletionError.user_message``.
``ParseFailure``
    Malformed structured output.  Never raised, returned inside a
    ``ParseResult`` (see ``tome.src.utils.text_utils``).
``PersistenceFailure``
    Document-store or session-store write/read failure.  Raised to the
    caller; local application state is left unchanged.
``MigrationPartialFailure``
    Some guest conversations could not be moved to the durable store.
    Non-fatal, guest data is kept for a manual retry.
``SubmissionInProgress``
    A generation request is already outstanding for the active context.
"""

from __future__ import annotations

from tome.config.prompt_templates import GENERATION_ERROR_RESPONSE


class TomeError(Exception):
    """Base class for every error Tome raises on purpose."""


class ServiceUnavailable(TomeError):
    """An external model or index service failed or is unreachable."""


class EmbeddingError(ServiceUnavailable):
    pass


class VectorIndexError(ServiceUnavailable):
    pass


class CompletionError(ServiceUnavailable):
    """Completion call failed; ``user_message`` is safe to show the user."""

    def __init__(self, message: str, user_message: str = GENERATION_ERROR_RESPONSE) -> None:
        super().__init__(message)
        self.user_message = user_message


class ParseFailure(TomeError):
    """Structured output could not be parsed.  Returned, not raised."""


class PersistenceFailure(TomeError):
    pass


class MigrationPartialFailure(PersistenceFailure):
    """Raised after a sign-in when only part of the guest data was migrated."""

    def __init__(self, migrated: int, failed: int) -> None:
        super().__init__(f"Migrated {migrated} guest conversation(s), {failed} failed. Guest conversations are still available.")
        self.migrated = migrated
        self.failed = failed


class SubmissionInProgress(TomeError):
    def __init__(self) -> None:
        super().__init__("A response is still being generated for this conversation.")
