"""
chatpro: one-to-one chat client core with phone-number sign-in.
"""

from chatpro.auth import AuthController, AuthState, SessionContext
from chatpro.chat import ChatSession, FailedSend
from chatpro.client import ChatClient
from chatpro.directory import DirectoryService
from chatpro.errors import (
    AuthProviderError,
    ChatError,
    InvalidCodeError,
    InvalidStateError,
    NotFoundError,
    NotReadyError,
    SendFailedError,
    StoreError,
    ValidationError,
)
from chatpro.providers import ChallengeHandle, ChallengeProvider, LocalChallengeProvider
from chatpro.schemas import AuthenticatedIdentity, Challenge, Country, Identity, Message
from chatpro.storage import SERVER_TIMESTAMP, DocumentStore, QuerySnapshot, Subscription
from chatpro.utils import canonicalize

__all__ = [
    "AuthController",
    "AuthState",
    "SessionContext",
    "ChatSession",
    "FailedSend",
    "ChatClient",
    "DirectoryService",
    "AuthProviderError",
    "ChatError",
    "InvalidCodeError",
    "InvalidStateError",
    "NotFoundError",
    "NotReadyError",
    "SendFailedError",
    "StoreError",
    "ValidationError",
    "ChallengeHandle",
    "ChallengeProvider",
    "LocalChallengeProvider",
    "AuthenticatedIdentity",
    "Challenge",
    "Country",
    "Identity",
    "Message",
    "SERVER_TIMESTAMP",
    "DocumentStore",
    "QuerySnapshot",
    "Subscription",
    "canonicalize",
]
