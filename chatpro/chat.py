import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from chatpro.auth import AuthController, SessionContext
from chatpro.errors import InvalidStateError, SendFailedError, StoreError, ValidationError
from chatpro.logging_utils import log_context
from chatpro.metrics import (
    record_delivery,
    record_send_outcome,
    subscription_closed,
    subscription_opened,
)
from chatpro.schemas import Message
from chatpro.storage import SERVER_TIMESTAMP, QuerySnapshot, Subscription
from chatpro.utils import canonicalize, channel_messages_collection

logger = logging.getLogger(__name__)


@dataclass
class FailedSend:
    """A message whose write did not go through."""
    text: str
    channel_id: str
    detail: str


class ChatSession:
    """
    One open conversation between the signed-in user and a peer.

    ``messages`` follows the channel's live stream, keyed by message id and
    sorted by server timestamp. ``draft`` is the local input buffer that
    ``send()`` clears optimistically and restores when a write fails.
    """

    def __init__(self, auth: AuthController, on_messages: Optional[Callable[[List[Message]], Any]] = None):
        self._auth = auth
        self._on_messages = on_messages
        self._subscription: Optional[Subscription] = None
        self._by_id: Dict[str, Message] = {}
        self.self_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.channel_id: Optional[str] = None
        self.messages: List[Message] = []
        self.draft = ""
        self.failed: List[FailedSend] = []

    @property
    def active(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def is_own(self, message: Message) -> bool:
        return message.sender_id == self.self_id

    # =========================================================================
    # Stream
    # =========================================================================

    def open(self, self_id: str, peer_id: str) -> str:
        """
        Subscribe to the conversation between ``self_id`` and ``peer_id``.

        Returns:
            The channel id, the same for both participants

        Raises:
            NotReadyError: the user has not finished signing in
            ValidationError: ``self_id`` is not the signed-in user, or the
                peer is the user themself
        """
        session = self._auth.require_ready()
        if self_id != session.uid:
            raise ValidationError("Conversations can only be opened as the signed-in user")
        if not peer_id or peer_id == self_id:
            raise ValidationError("Choose someone else to chat with")

        self.close()
        self.self_id = self_id
        self.peer_id = peer_id
        self.channel_id = canonicalize(self_id, peer_id)
        self._by_id = {}
        self.messages = []

        subscription = self._auth.store.watch(
            channel_messages_collection(session.app_id, self.channel_id),
            order_by="sentAt",
        )
        self._subscription = subscription
        subscription.listen(lambda snapshot: self._handle(subscription, snapshot))
        session.on_close(self.close)
        subscription_opened("chat")

        with log_context(session_id=session.session_id, channel_id=self.channel_id):
            logger.info("Conversation opened")
        return self.channel_id

    async def _handle(self, subscription: Subscription, snapshot: QuerySnapshot) -> None:
        if subscription is not self._subscription or subscription.closed:
            return

        # Messages are append-only, so merging by id keeps repeated or
        # stale snapshots from duplicating or dropping entries
        for document in snapshot:
            try:
                message = Message.model_validate({"id": document.id, **document.data})
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed message {document.id}: {e.error_count()} errors")
                continue
            self._by_id[message.id] = message

        self.messages = sorted(self._by_id.values(), key=lambda m: (m.sent_at, m.id))
        record_delivery("chat")

        if self._on_messages is not None:
            result = self._on_messages(list(self.messages))
            if inspect.isawaitable(result):
                await result

    def close(self) -> None:
        """
        Release the message subscription and forget the conversation.

        ``send()`` is refused until the next ``open()``. Safe to call more
        than once.
        """
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            subscription.close()
            subscription_closed("chat")
            logger.info(f"Conversation closed: {self.channel_id}")

        self.self_id = None
        self.peer_id = None
        self.channel_id = None
        self._by_id = {}
        self.messages = []
        self.draft = ""
        self.failed = []

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, text: Optional[str] = None) -> "asyncio.Task[Message]":
        """
        Send ``text`` (or the current draft) to the open conversation.

        The draft is cleared straight away and the write runs in the
        background. Await the returned task for the stored message; it raises
        SendFailedError if the write fails, after the text has been put back
        into ``draft`` (when the user has not typed anything new) and
        recorded in ``failed``.

        Raises:
            NotReadyError: the user has not finished signing in
            InvalidStateError: no conversation is open
            ValidationError: blank text; nothing is written
        """
        session = self._auth.require_ready()
        if self.channel_id is None:
            raise InvalidStateError("Open a conversation first")

        body = self.draft if text is None else text
        if not body or not body.strip():
            record_send_outcome("rejected")
            raise ValidationError("Message must not be empty")

        self.draft = ""
        return asyncio.get_running_loop().create_task(self._write(body, self.channel_id, session))

    def resend(self, failed_send: FailedSend) -> "asyncio.Task[Message]":
        """Retry a failed send in its original channel."""
        session = self._auth.require_ready()
        if failed_send in self.failed:
            self.failed.remove(failed_send)
        if self.draft == failed_send.text:
            self.draft = ""
        return asyncio.get_running_loop().create_task(
            self._write(failed_send.text, failed_send.channel_id, session)
        )

    async def _write(self, text: str, channel_id: str, session: SessionContext) -> Message:
        started = time.monotonic()
        with log_context(session_id=session.session_id, channel_id=channel_id):
            try:
                document = await self._auth.store.add(
                    channel_messages_collection(session.app_id, channel_id),
                    {"text": text, "senderId": session.uid, "sentAt": SERVER_TIMESTAMP},
                )
            except StoreError as e:
                record_send_outcome("failed")
                # Only the conversation that sent it gets the text back
                if channel_id == self.channel_id and session is self._auth.session:
                    self.failed.append(FailedSend(text=text, channel_id=channel_id, detail=e.detail))
                    if not self.draft:
                        self.draft = text
                logger.error(f"Message write failed: {e.detail}")
                raise SendFailedError("Message not sent", text) from e

            record_send_outcome("ok", time.monotonic() - started)
            logger.info(f"Message sent: {document.id}")
            return Message.model_validate({"id": document.id, **document.data})
