"""
Challenge provider contract and a local implementation.

A provider issues phone-verification challenges and turns a confirmed code
into an authenticated identity. Any anti-automation proof it needs before
issuing a challenge is its own business; the controller never sees it.
"""

import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from chatpro.config import settings
from chatpro.errors import AuthProviderError, InvalidCodeError
from chatpro.schemas import AuthenticatedIdentity, Challenge, validate_e164
from chatpro.utils import code_digest, verify_code

logger = logging.getLogger(__name__)


class ChallengeHandle(ABC):
    """A pending challenge. Confirming it with the right code signs the user in."""

    challenge: Challenge

    @abstractmethod
    async def confirm(self, code: str) -> AuthenticatedIdentity:
        """
        Resolve the challenge.

        Raises:
            InvalidCodeError: wrong, expired or already used code
        """


class ChallengeProvider(ABC):
    """Contract the auth controller needs from an authentication provider."""

    @abstractmethod
    async def request_challenge(self, phone_number: str) -> ChallengeHandle:
        """
        Send a verification code to ``phone_number``.

        Raises:
            AuthProviderError: the challenge could not be issued
        """

    @abstractmethod
    async def current_user(self) -> Optional[AuthenticatedIdentity]:
        """The identity of the persisted provider session, if any."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the persisted provider session."""


class LocalChallengeHandle(ChallengeHandle):

    def __init__(self, provider: "LocalChallengeProvider", challenge: Challenge, digest: str):
        self.challenge = challenge
        self._provider = provider
        self._digest = digest

    async def confirm(self, code: str) -> AuthenticatedIdentity:
        return self._provider._confirm(self, code)


class LocalChallengeProvider(ChallengeProvider):
    """
    In-process challenge provider for development and tests.

    Codes are random 6-digit strings. Only their HMAC-SHA256 digest is kept;
    the plain code goes to ``code_sink`` (an SMS gateway stand-in), which by
    default appends ``(phone, code)`` to ``outbox``. Each phone number maps to
    one stable uid.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        code_sink: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.secret = secret or settings.CHALLENGE_SECRET
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.CHALLENGE_TTL_SECONDS)
        self.outbox: List[Tuple[str, str]] = []
        self._code_sink = code_sink or (lambda phone, code: self.outbox.append((phone, code)))
        self._clock = clock
        self._accounts: Dict[str, str] = {}
        self._current: Optional[AuthenticatedIdentity] = None

    def last_code(self, phone_number: str) -> Optional[str]:
        """Most recent code delivered to ``phone_number``."""
        for phone, code in reversed(self.outbox):
            if phone == phone_number:
                return code
        return None

    async def request_challenge(self, phone_number: str) -> ChallengeHandle:
        try:
            validate_e164(phone_number)
        except ValueError as e:
            logger.warning(f"Challenge refused for malformed number: {e}")
            raise AuthProviderError("Could not send the verification code") from e

        code = f"{secrets.randbelow(10 ** settings.CODE_LENGTH):0{settings.CODE_LENGTH}d}"
        challenge = Challenge(
            token=uuid.uuid4().hex,
            target_phone=phone_number,
            created_at=self._clock(),
        )
        self._code_sink(phone_number, code)
        logger.info(f"Challenge issued: token={challenge.token[:8]}...")
        return LocalChallengeHandle(self, challenge, code_digest(code, self.secret))

    def _confirm(self, handle: LocalChallengeHandle, code: str) -> AuthenticatedIdentity:
        challenge = handle.challenge
        if challenge.consumed:
            raise InvalidCodeError("This code was already used")
        if self._clock() - challenge.created_at > self.ttl:
            logger.info(f"Challenge expired: token={challenge.token[:8]}...")
            raise InvalidCodeError("The code has expired")
        if not verify_code(code, handle._digest, self.secret):
            raise InvalidCodeError("Incorrect code")

        challenge.consumed = True
        uid = self._accounts.setdefault(challenge.target_phone, uuid.uuid4().hex)
        self._current = AuthenticatedIdentity(uid=uid, phone=challenge.target_phone)
        logger.info(f"Challenge confirmed: token={challenge.token[:8]}...")
        return self._current

    async def current_user(self) -> Optional[AuthenticatedIdentity]:
        return self._current

    async def sign_out(self) -> None:
        self._current = None
