"""Exception hierarchy for inkwell.

Storage and authentication errors abort the current operation. Inference and
decision-parsing errors are recoverable and leave the session usable.
"""

from __future__ import annotations


class InkwellError(Exception):
    """Base class for all inkwell errors."""


class AuthenticationError(InkwellError):
    """Wrong passphrase, or ciphertext that does not authenticate under the key."""


class SessionExpiredError(InkwellError):
    """A sensitive operation was attempted on an expired or locked session."""


class StorageIntegrityError(InkwellError):
    """Stored content does not match its recorded checksum, or the index is corrupt."""


class InferenceServiceError(InkwellError):
    """The inference backend failed to produce a usable response."""


class InferenceConnectionError(InferenceServiceError):
    """The inference backend could not be reached."""


class InferenceTimeoutError(InferenceServiceError):
    """The inference backend did not answer in time."""


class ModelUnavailableError(InferenceServiceError):
    """The requested model is not available on the backend."""

    def __init__(self, model: str) -> None:
        """Store the missing model name."""
        super().__init__(f"Model not available: {model}")
        self.model = model


class MalformedResponseError(InferenceServiceError):
    """The backend answered, but the payload could not be interpreted."""


class DecisionParseError(InkwellError):
    """The reflector output is not a valid retrieval decision."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        """Keep the raw output for diagnostics."""
        super().__init__(message)
        self.raw = raw


class EmbeddingMismatchError(InkwellError):
    """Stored embeddings were produced by a different model or dimension."""

    def __init__(self, message: str) -> None:
        """Append the remedy to ``message``."""
        super().__init__(f"{message}; run `inkwell reindex --force` to rebuild the embeddings")
