import logging
from typing import Optional

from chatpro.auth import AuthController
from chatpro.chat import ChatSession
from chatpro.config import Settings, settings as default_settings
from chatpro.directory import DirectoryService
from chatpro.logging_utils import setup_logging
from chatpro.providers import ChallengeProvider, LocalChallengeProvider
from chatpro.schemas import HealthStatus
from chatpro.storage import DocumentStore

logger = logging.getLogger(__name__)


class ChatClient:
    """
    Wires the store, the challenge provider and the three client components
    together.

    Use as an async context manager:
    - Startup: configure logging, create tables, restore the provider session
    - Shutdown: close the session's subscriptions and release the store
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        provider: Optional[ChallengeProvider] = None,
        settings: Optional[Settings] = None,
        configure_logging: bool = True,
    ):
        self.settings = settings or default_settings
        self.store = store or DocumentStore(self.settings.DATABASE_URL)
        self.provider = provider or LocalChallengeProvider()
        self.auth = AuthController(self.store, self.provider, app_id=self.settings.APP_ID)
        self.directory = DirectoryService(self.auth)
        self.chat = ChatSession(self.auth)
        self._configure_logging = configure_logging

    async def start(self) -> "ChatClient":
        if self._configure_logging:
            setup_logging(self.settings.LOG_LEVEL)
        self.store.init_db()
        state = await self.auth.restore()
        logger.info(f"Chat client started in state {state.value}")
        return self

    async def stop(self) -> None:
        self.chat.close()
        self.directory.stop()
        if self.auth.session is not None:
            self.auth.session.close()
        self.store.close()
        logger.info("Chat client stopped")

    async def __aenter__(self) -> "ChatClient":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def health(self) -> HealthStatus:
        """
        Readiness check: the store must be reachable with its schema applied.
        """
        if not self.store.check_health():
            return HealthStatus(
                status="not_ready",
                reason="Document store not reachable or schema not applied"
            )
        return HealthStatus(status="ready")
