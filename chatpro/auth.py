"""
Phone-number sign-in state machine.

    UNAUTHENTICATED -> CHALLENGE_PENDING -> PROFILE_MISSING -> READY

PROFILE_MISSING and READY are also reached straight from ``restore()`` when
the provider still holds a session. The directory and chat components ask
``require_ready()`` before every read or write, so nothing touches the store
on behalf of a user who is not fully signed in.
"""

import logging
import uuid
from enum import Enum
from typing import Callable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from chatpro.config import settings
from chatpro.errors import (
    AuthProviderError,
    InvalidCodeError,
    InvalidStateError,
    NotFoundError,
    NotReadyError,
    StoreError,
    ValidationError,
)
from chatpro.logging_utils import log_context
from chatpro.metrics import record_auth_failure, record_auth_transition
from chatpro.providers import ChallengeHandle, ChallengeProvider
from chatpro.schemas import AuthenticatedIdentity, Country, Identity
from chatpro.storage import SERVER_TIMESTAMP, DocumentStore
from chatpro.utils import directory_entry_path, is_ascii_digits, profile_path, strip_phone_formatting

logger = logging.getLogger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CHALLENGE_PENDING = "challenge_pending"
    PROFILE_MISSING = "profile_missing"
    READY = "ready"


class SessionContext:
    """
    Everything tied to one signed-in user.

    Created when the provider confirms an identity and closed on sign-out.
    Components register their teardown with ``on_close()`` so that closing
    the session releases every live subscription opened under it.
    """

    def __init__(self, user: AuthenticatedIdentity, app_id: str):
        self.session_id = uuid.uuid4().hex
        self.uid = user.uid
        self.phone = user.phone
        self.app_id = app_id
        self.identity: Optional[Identity] = None
        self.closed = False
        self._closers: List[Callable[[], None]] = []

    def on_close(self, closer: Callable[[], None]) -> None:
        if closer not in self._closers:
            self._closers.append(closer)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for closer in self._closers:
            closer()
        self._closers.clear()
        logger.debug(f"Session closed: {self.session_id}")


class AuthController:
    """
    Drives sign-up and sign-in through the challenge provider and keeps the
    resulting session.

    Failed steps raise and leave ``state`` where it was, so the same step can
    be retried.
    """

    def __init__(self, store: DocumentStore, provider: ChallengeProvider, app_id: Optional[str] = None):
        self.store = store
        self.provider = provider
        self.app_id = app_id or settings.APP_ID
        self.state = AuthState.UNAUTHENTICATED
        self.session: Optional[SessionContext] = None
        self._challenge: Optional[ChallengeHandle] = None

    @property
    def identity(self) -> Optional[Identity]:
        return self.session.identity if self.session is not None else None

    @property
    def challenge(self) -> Optional[ChallengeHandle]:
        return self._challenge

    def require_ready(self) -> SessionContext:
        """
        Return the live session.

        Raises:
            NotReadyError: the user has not finished signing in
        """
        if self.state is not AuthState.READY or self.session is None or self.session.closed:
            raise NotReadyError("Sign in to continue")
        return self.session

    def _transition(self, state: AuthState) -> None:
        logger.info(f"Auth state: {self.state.value} -> {state.value}")
        self.state = state
        record_auth_transition(state.value)

    def _require_state(self, *states: AuthState) -> None:
        if self.state not in states:
            raise InvalidStateError(f"Not allowed while {self.state.value}")

    def _log_context(self):
        return log_context(session_id=self.session.session_id if self.session else None)

    # =========================================================================
    # Session Restoration
    # =========================================================================

    async def restore(self) -> AuthState:
        """Resume the provider's persisted session, if there is one."""
        user = await self.provider.current_user()
        if user is None:
            logger.info("No provider session to restore")
            return self.state
        logger.info("Restoring provider session")
        await self._open_session(user)
        return self.state

    async def _open_session(self, user: AuthenticatedIdentity) -> None:
        # Read first: a failed read must leave the controller untouched
        profile = await self.store.get(profile_path(self.app_id, user.uid))

        if self.session is not None:
            self.session.close()
        self.session = SessionContext(user, self.app_id)
        self._challenge = None

        with self._log_context():
            if profile is None:
                self._transition(AuthState.PROFILE_MISSING)
                return

            self.session.identity = Identity.model_validate(profile)
            self._transition(AuthState.READY)
            await self.touch()

    # =========================================================================
    # Sign-in Steps
    # =========================================================================

    async def submit_phone(self, country: Union[Country, str], local_number: str) -> AuthState:
        """
        Request a verification code for ``country.code + local_number``.

        Raises:
            ValidationError: malformed country code or local number
            AuthProviderError: the provider could not issue a challenge
        """
        self._require_state(AuthState.UNAUTHENTICATED, AuthState.CHALLENGE_PENDING)

        try:
            if not isinstance(country, Country):
                country = Country(code=country)
        except PydanticValidationError as e:
            record_auth_failure("validation")
            raise ValidationError("Choose a valid country code") from e

        digits = strip_phone_formatting(local_number or "")
        if not is_ascii_digits(digits) or len(digits) < settings.MIN_PHONE_DIGITS:
            record_auth_failure("validation")
            raise ValidationError("Enter a valid phone number")

        phone_number = country.code + digits
        logger.info(f"Requesting challenge for number ending {digits[-2:]}")
        try:
            handle = await self.provider.request_challenge(phone_number)
        except AuthProviderError:
            record_auth_failure("provider")
            raise

        if handle is None:
            record_auth_failure("provider")
            raise AuthProviderError("Could not send the verification code")

        self._challenge = handle
        self._transition(AuthState.CHALLENGE_PENDING)
        return self.state

    def edit_phone(self) -> AuthState:
        """Drop the pending challenge and go back to number entry."""
        self._require_state(AuthState.CHALLENGE_PENDING)
        self._challenge = None
        self._transition(AuthState.UNAUTHENTICATED)
        return self.state

    async def submit_code(self, code: str) -> AuthState:
        """
        Confirm the pending challenge.

        Raises:
            InvalidStateError: no challenge is pending
            ValidationError: ``code`` is not exactly CODE_LENGTH digits
            InvalidCodeError: the provider rejected the code; the challenge
                stays pending so the user can try again
            StoreError: the profile could not be read after the code was
                accepted; the used challenge is dropped and the controller
                goes back to UNAUTHENTICATED (``restore()`` picks up the
                provider session once the store is back)
        """
        self._require_state(AuthState.CHALLENGE_PENDING)
        if self._challenge is None:
            raise InvalidStateError("Request a new code")

        if not isinstance(code, str) or len(code) != settings.CODE_LENGTH or not is_ascii_digits(code):
            record_auth_failure("validation")
            raise ValidationError(f"Enter the {settings.CODE_LENGTH}-digit code")

        try:
            user = await self._challenge.confirm(code)
        except InvalidCodeError:
            record_auth_failure("invalid_code")
            logger.info("Verification code rejected")
            raise

        try:
            await self._open_session(user)
        except StoreError:
            if self.session is None:
                self._challenge = None
                self._transition(AuthState.UNAUTHENTICATED)
            raise
        return self.state

    async def complete_profile(self, name: str) -> Identity:
        """
        Create the user's profile and public directory entry.

        Raises:
            InvalidStateError: not in PROFILE_MISSING
            ValidationError: blank name
        """
        self._require_state(AuthState.PROFILE_MISSING)

        display_name = (name or "").strip()
        if not display_name:
            record_auth_failure("validation")
            raise ValidationError("Enter a name")

        session = self.session
        with self._log_context():
            record = {
                "uid": session.uid,
                "displayName": display_name,
                "phone": session.phone,
                "lastSeenAt": SERVER_TIMESTAMP,
                "avatarTag": settings.DEFAULT_AVATAR_TAG,
            }
            stored = await self.store.set(profile_path(self.app_id, session.uid), record)
            await self.store.set(directory_entry_path(self.app_id, session.uid), stored.data)

            session.identity = Identity.model_validate(stored.data)
            logger.info("Profile created")
            self._transition(AuthState.READY)
        return session.identity

    async def touch(self) -> Identity:
        """
        Refresh ``lastSeenAt`` on the profile and directory entry.

        Raises:
            NotFoundError: the profile record is missing
        """
        session = self.require_ready()
        path = profile_path(self.app_id, session.uid)

        if await self.store.get(path) is None:
            raise NotFoundError("Profile not found")

        stored = await self.store.set(path, {"lastSeenAt": SERVER_TIMESTAMP}, merge=True)
        await self.store.set(directory_entry_path(self.app_id, session.uid), stored.data)
        session.identity = Identity.model_validate(stored.data)
        logger.debug("Last seen refreshed")
        return session.identity

    async def sign_out(self) -> AuthState:
        """
        Close the session and forget the pending challenge.

        Stored profiles and messages are kept.
        """
        with self._log_context():
            if self.session is not None:
                self.session.close()
            self.session = None
            self._challenge = None
            await self.provider.sign_out()
            self._transition(AuthState.UNAUTHENTICATED)
        return self.state
