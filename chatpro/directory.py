import inspect
import logging
from typing import Any, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from chatpro.auth import AuthController
from chatpro.errors import NotFoundError
from chatpro.logging_utils import log_context
from chatpro.metrics import record_delivery, subscription_closed, subscription_opened
from chatpro.schemas import Identity
from chatpro.storage import QuerySnapshot, Subscription
from chatpro.utils import directory_collection

logger = logging.getLogger(__name__)


class DirectoryService:
    """
    Live roster of the other identities in the public directory.

    Every snapshot replaces ``roster`` wholesale and is passed to the
    ``on_roster`` callback. The roster never contains the subscriber and
    carries no ordering guarantee.
    """

    def __init__(self, auth: AuthController):
        self._auth = auth
        self._subscription: Optional[Subscription] = None
        self._on_roster: Optional[Callable[[List[Identity]], Any]] = None
        self.current_identity_id: Optional[str] = None
        self.roster: List[Identity] = []

    @property
    def active(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def start(
        self,
        current_identity_id: Optional[str] = None,
        on_roster: Optional[Callable[[List[Identity]], Any]] = None,
    ) -> None:
        """
        Subscribe to the directory.

        Args:
            current_identity_id: Identity to leave out; defaults to the
                signed-in user
            on_roster: Called with the full roster after each update; may be
                a coroutine function

        Raises:
            NotReadyError: the user has not finished signing in
        """
        session = self._auth.require_ready()
        self.stop()

        self.current_identity_id = current_identity_id or session.uid
        self._on_roster = on_roster
        self.roster = []

        subscription = self._auth.store.watch(directory_collection(session.app_id))
        self._subscription = subscription
        subscription.listen(lambda snapshot: self._handle(subscription, snapshot))
        session.on_close(self.stop)
        subscription_opened("directory")
        logger.info("Directory subscription started")

    async def _handle(self, subscription: Subscription, snapshot: QuerySnapshot) -> None:
        # A snapshot queued before a restart belongs to the old subscription
        if subscription is not self._subscription or subscription.closed:
            return

        roster = []
        for document in snapshot:
            if document.id == self.current_identity_id:
                continue
            try:
                identity = Identity.model_validate(document.data)
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed directory entry {document.id}: {e.error_count()} errors")
                continue
            if identity.id != self.current_identity_id:
                roster.append(identity)

        self.roster = roster
        record_delivery("directory")
        with log_context(roster_size=len(roster)):
            logger.debug("Directory snapshot processed")

        if self._on_roster is not None:
            result = self._on_roster(list(roster))
            if inspect.isawaitable(result):
                await result

    def stop(self) -> None:
        """Release the directory subscription and clear the roster. Safe to call more than once."""
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            subscription.close()
            subscription_closed("directory")
            logger.info("Directory subscription stopped")

        self.current_identity_id = None
        self._on_roster = None
        self.roster = []

    def search(self, text: str) -> List[Identity]:
        """Roster entries whose name or phone contains ``text``, sorted by name."""
        needle = (text or "").strip().casefold()
        matches = [
            identity for identity in self.roster
            if needle in identity.display_name.casefold() or needle in identity.phone
        ]
        return sorted(matches, key=lambda identity: (identity.display_name.casefold(), identity.id))

    def get(self, identity_id: str) -> Identity:
        """
        Look up a roster entry.

        Raises:
            NotFoundError: ``identity_id`` is not in the roster
        """
        for identity in self.roster:
            if identity.id == identity_id:
                return identity
        raise NotFoundError("Contact not found")
