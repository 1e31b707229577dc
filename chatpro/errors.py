"""
Error taxonomy for the chat client core.

Every error carries a ``detail`` string that is safe to show to the user.
None of them is fatal: callers catch them, display ``detail`` and let the
user retry the same step.
"""


class ChatError(Exception):
    """Base class for all client-core errors."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(ChatError):
    """Malformed local input. Raised before any provider or store call."""


class AuthProviderError(ChatError):
    """The challenge provider could not issue a challenge."""


class InvalidCodeError(ChatError):
    """The submitted code was wrong, expired or already used."""


class SendFailedError(ChatError):
    """A message write did not durably succeed."""

    def __init__(self, detail: str, text: str):
        super().__init__(detail)
        self.text = text


class NotFoundError(ChatError):
    """A record that was expected to exist is missing."""


class InvalidStateError(ChatError):
    """The operation is not allowed in the current auth state."""


class NotReadyError(InvalidStateError):
    """Directory or chat access attempted outside the Ready state."""


class StoreError(ChatError):
    """The document store failed to read or write."""
