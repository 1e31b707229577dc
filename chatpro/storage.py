import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import create_engine, text, inspect as sa_inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from chatpro.config import settings
from chatpro.errors import StoreError
from chatpro.utils import split_path

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Fixed-width so stored timestamps sort lexicographically
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class _ServerTimestamp:
    """Sentinel replaced by the store clock when a document is written."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document as read from the store."""
    id: str
    path: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class QuerySnapshot:
    """The full, ordered result of a collection query at one point in time."""
    collection: str
    documents: List[DocumentSnapshot] = field(default_factory=list)

    def __iter__(self):
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


_CLOSED = object()


class Subscription:
    """
    A live query over one collection.

    Iterate it (``async for snapshot in subscription``) or attach a handler
    with ``listen()``. Snapshots are handled one at a time, in order. After
    ``close()`` no further snapshot is delivered and the handler is never
    entered again.
    """

    def __init__(self, store: "DocumentStore", collection: str, order_by: Optional[str] = None):
        self.collection = collection
        self.order_by = order_by
        self.closed = False
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def _deliver(self, snapshot: QuerySnapshot) -> None:
        if not self.closed:
            self._queue.put_nowait(snapshot)

    def __aiter__(self):
        return self

    async def __anext__(self) -> QuerySnapshot:
        if self.closed:
            raise StopAsyncIteration
        snapshot = await self._queue.get()
        if snapshot is _CLOSED or self.closed:
            raise StopAsyncIteration
        return snapshot

    def listen(self, handler: Callable[[QuerySnapshot], Any]) -> asyncio.Task:
        """
        Run ``handler`` for every snapshot on a background task.

        The handler may be a plain function or a coroutine function. An
        exception from the handler is logged and the next snapshot is still
        delivered.
        """
        async def pump():
            async for snapshot in self:
                try:
                    result = handler(snapshot)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"Subscription handler failed for {self.collection}")

        self._task = asyncio.get_running_loop().create_task(pump())
        return self._task

    def close(self) -> None:
        """Stop delivery. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        self._store._unregister(self)
        self._queue.put_nowait(_CLOSED)
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()
        logger.debug(f"Subscription closed: {self.collection}")


class DocumentStore:
    """
    Path-addressed document store backed by SQLAlchemy, with push-based
    collection subscriptions.

    Documents live at slash-separated paths; a document's collection is its
    parent path. Values equal to ``SERVER_TIMESTAMP`` are replaced with the
    store clock, which never goes backwards and never repeats. Every write
    pushes a fresh snapshot to the subscriptions watching the written
    collection.

    ``get``, ``set`` and ``add`` are coroutines for the callers' sake only:
    they run their SQLAlchemy session on the sync engine inline and block
    the event loop until the query returns. Suitable for SQLite and other
    local databases; a remote database needs an async engine instead.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL

        engine_kwargs = {"echo": False}
        if self.database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            # In-memory databases exist per connection, so share a single one
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._last_timestamp: Optional[datetime] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during client startup.
        """
        logger.debug(f"Initializing document store with URL: {self.database_url}")
        try:
            # Import models to register them with Base.metadata
            from chatpro.models import Document

            Base.metadata.create_all(bind=self.engine)
            logger.info("Document store initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize document store: {e}")
            raise StoreError("Document store could not be initialized") from e

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        logger.debug("Checking document store health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
            if not sa_inspect(self.engine).has_table("documents"):
                logger.error("Document store schema not applied: 'documents' table not found")
                return False
            logger.debug("Document store health check passed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Document store health check failed: {e}")
            return False

    def close(self) -> None:
        """Close every open subscription and release the engine."""
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.close()
        self.engine.dispose()

    # =========================================================================
    # Clock
    # =========================================================================

    def server_timestamp(self) -> str:
        """Next store timestamp: strictly greater than any issued before."""
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now.strftime(TIMESTAMP_FORMAT)

    def _resolve(self, data: Dict[str, Any], timestamp: str) -> Dict[str, Any]:
        return {
            key: (timestamp if value is SERVER_TIMESTAMP else value)
            for key, value in data.items()
        }

    # =========================================================================
    # Reads and Writes
    # =========================================================================

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        """
        Read one document.

        Returns:
            The document data, or None if nothing is stored at ``path``.
        """
        from chatpro.models import Document

        logger.debug(f"Reading document: {path}")
        try:
            with self.SessionLocal() as db:
                row = db.get(Document, path)
                return dict(row.data) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read document {path}: {e}")
            raise StoreError("Could not read from the store") from e

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> DocumentSnapshot:
        """
        Create or replace the document at ``path``.

        Args:
            path: Document path
            data: Document fields; SERVER_TIMESTAMP values are resolved
            merge: Keep existing fields not present in ``data``

        Returns:
            The stored document
        """
        from chatpro.models import Document

        collection, doc_id = split_path(path)
        timestamp = self.server_timestamp()
        resolved = self._resolve(data, timestamp)

        logger.info(f"Writing document: path={path}, merge={merge}")
        try:
            with self.SessionLocal() as db:
                row = db.get(Document, path)
                if row is None:
                    row = Document(
                        path=path,
                        collection=collection,
                        doc_id=doc_id,
                        data=resolved,
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                    db.add(row)
                else:
                    row.data = {**row.data, **resolved} if merge else resolved
                    row.updated_at = timestamp
                db.commit()
                stored = DocumentSnapshot(id=doc_id, path=path, data=dict(row.data))
        except SQLAlchemyError as e:
            logger.error(f"Failed to write document {path}: {e}")
            raise StoreError("Could not write to the store") from e

        self._notify(collection)
        return stored

    async def add(self, collection: str, data: Dict[str, Any]) -> DocumentSnapshot:
        """
        Append a new document with a store-assigned id to ``collection``.

        Returns:
            The stored document
        """
        from chatpro.models import Document

        doc_id = uuid.uuid4().hex
        path = f"{collection}/{doc_id}"
        timestamp = self.server_timestamp()
        resolved = self._resolve(data, timestamp)

        logger.info(f"Appending document: collection={collection}, id={doc_id}")
        try:
            with self.SessionLocal() as db:
                db.add(Document(
                    path=path,
                    collection=collection,
                    doc_id=doc_id,
                    data=resolved,
                    created_at=timestamp,
                    updated_at=timestamp,
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to append document to {collection}: {e}")
            raise StoreError("Could not write to the store") from e

        self._notify(collection)
        return DocumentSnapshot(id=doc_id, path=path, data=resolved)

    def query(self, collection: str, order_by: Optional[str] = None) -> QuerySnapshot:
        """
        Read every document of ``collection``.

        Documents are ordered ascending by the ``order_by`` field (missing
        values last), then by document id. Without ``order_by`` the order is
        by document id only.
        """
        from chatpro.models import Document

        try:
            with self.SessionLocal() as db:
                rows = db.query(Document).filter(Document.collection == collection).all()
                documents = [
                    DocumentSnapshot(id=row.doc_id, path=row.path, data=dict(row.data))
                    for row in rows
                ]
        except SQLAlchemyError as e:
            logger.error(f"Failed to query collection {collection}: {e}")
            raise StoreError("Could not read from the store") from e

        if order_by:
            documents.sort(key=lambda d: (d.data.get(order_by) is None, d.data.get(order_by) or "", d.id))
        else:
            documents.sort(key=lambda d: d.id)
        logger.debug(f"Queried {len(documents)} documents from {collection}")
        return QuerySnapshot(collection=collection, documents=documents)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def watch(self, collection: str, order_by: Optional[str] = None) -> Subscription:
        """
        Open a live query over ``collection``.

        The current result is delivered immediately, then again after every
        write to the collection.
        """
        subscription = Subscription(self, collection, order_by)
        self._subscriptions.setdefault(collection, []).append(subscription)
        logger.debug(f"Subscription opened: {collection}")
        subscription._deliver(self.query(collection, order_by))
        return subscription

    def _unregister(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.collection, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.collection, None)

    def _notify(self, collection: str) -> None:
        for subscription in list(self._subscriptions.get(collection, [])):
            try:
                subscription._deliver(self.query(collection, subscription.order_by))
            except StoreError:
                # The write itself succeeded; the watcher catches up on the next one
                logger.error(f"Failed to push snapshot for {collection}")
