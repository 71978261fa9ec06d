"""
LiveQuery In-Memory Store - Reference Persistent Store
======================================================

A thread-safe, in-process implementation of the ``PersistentStore`` protocol.
It is small enough to read in one sitting and complete enough to back tests,
prototypes and examples.

Features:
- Rows are plain Python objects, grouped into tables by their concrete type
- Copy-on-write tables, so a read context is a cheap snapshot at a revision
- Query results memoized per (revision, descriptor) in an LRU cache
- Change feeds indexed by entity type for O(len(mro)) notification dispatch
- Optional predicate-narrowed relevance
- Batch updates that coalesce into one notification per interested feed
- Registration-thread affinity for change observers

Usage:
    store = InMemoryStore()

    # Register on the store's thread (the one that created it by default)
    feed = store.observe_changes(RelevanceKey(Todo))

    todo_id = store.insert(Todo("write docs"))

    with store.batch():
        store.update(todo_id, Todo("write docs", done=True))
        store.insert(Todo("ship it"))
        # One notification sent here

    ctx = store.create_read_context()
    rows = store.execute(ctx, QueryDescriptor(Todo, sort_by="title"))
"""

import asyncio
import itertools
import logging
import operator
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Type

from cachetools import LRUCache

from .descriptor import QueryDescriptor, RelevanceKey
from .errors import FetchCancelledError, StoreClosedError, StoreError
from .signals import TICK, CancellationToken, UpdateSignal

Table = Mapping[int, Any]


@dataclass(frozen=True)
class MemoryReadContext:
    """Snapshot of the store's tables at ``revision``."""

    revision: int
    tables: Mapping[Type[Any], Table]


# ============================================================================
# CHANGE FEED
# ============================================================================


def _resolve(waiter: asyncio.Future) -> None:
    if not waiter.done():
        waiter.set_result(None)


class ChangeFeed:
    """
    Async sequence of ticks, one per relevant notification.

    ``notify`` and ``fail`` may be called from any thread; the consumer's loop
    is woken with ``call_soon_threadsafe``. Notifications that arrive before
    anyone iterates are counted and delivered later, none are lost.
    """

    def __init__(
        self, key: RelevanceKey, on_close: Callable[["ChangeFeed"], None]
    ) -> None:
        self.key = key
        self._on_close = on_close
        self._lock = threading.Lock()
        self._pending = 0
        self._error: Optional[Exception] = None
        self._closed = False
        self._released = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._waiter: Optional[asyncio.Future] = None
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._pending

    def notify(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._pending += 1
            self._wake_locked()

    def fail(self, error: Exception) -> None:
        with self._lock:
            if self._closed:
                return
            self._error = error
            self._closed = True
            self._wake_locked()

    def _wake_locked(self) -> None:
        waiter, loop = self._waiter, self._loop
        if waiter is None or loop is None:
            return
        self._waiter = None
        try:
            loop.call_soon_threadsafe(_resolve, waiter)
        except RuntimeError:
            logging.debug(f"Feed for {self.key!r} lost its loop, dropping wakeup")

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> UpdateSignal:
        while True:
            with self._lock:
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
                if self._pending:
                    self._pending -= 1
                    self.delivered += 1
                    return TICK
                if self._closed:
                    raise StopAsyncIteration
                self._loop = asyncio.get_running_loop()
                waiter = self._loop.create_future()
                self._waiter = waiter
            try:
                await waiter
            finally:
                with self._lock:
                    if self._waiter is waiter:
                        self._waiter = None

    async def aclose(self) -> None:
        """Stop the feed and unregister it from its store."""
        with self._lock:
            self._closed = True
            self._pending = 0
            self._wake_locked()
            if self._released:
                return
            self._released = True
        self._on_close(self)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"ChangeFeed({self.key.entity.__name__}, {state}, pending={self._pending})"


# ============================================================================
# STORE
# ============================================================================


class InMemoryStore:
    """
    In-memory persistent store with relevance-scoped change feeds.

    Args:
        cache_size: Size of the LRU cache of query results (default: 1024)
        registration_thread: Thread that must register change observers;
            defaults to the thread creating the store
    """

    def __init__(
        self,
        cache_size: int = 1024,
        registration_thread: Optional[threading.Thread] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._tables: Dict[Type[Any], Table] = {}
        self._row_types: Dict[int, Type[Any]] = {}
        self._ids = itertools.count(1)
        self._revision = 0
        self._closed = False

        self._cache: LRUCache = LRUCache(maxsize=cache_size)
        self._registration_thread = registration_thread or threading.current_thread()

        # Entity type -> feeds whose relevance key names that type
        self._feeds: Dict[Type[Any], Set[ChangeFeed]] = {}

        self._batch_depth = 0
        self._batch_events: List[Tuple[Type[Any], Any, Any]] = []

        self._stats = {
            "fetches": 0,
            "cache_hits": 0,
            "notifications": 0,
            "mutations": 0,
        }

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fetch_count(self) -> int:
        return self._stats["fetches"]

    @property
    def registration_thread(self) -> threading.Thread:
        return self._registration_thread

    def stats(self) -> Dict[str, int]:
        with self._lock:
            result = dict(self._stats)
            result["feeds"] = sum(len(feeds) for feeds in self._feeds.values())
            result["rows"] = len(self._row_types)
            return result

    def __len__(self) -> int:
        return len(self._row_types)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("store is closed")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, row: Any) -> int:
        """Add ``row`` and return its id."""
        with self._lock:
            self._check_open()
            row_id = next(self._ids)
            entity = type(row)
            self._write(entity, row_id, row)
            self._row_types[row_id] = entity
            self._changed(entity, None, row)
            return row_id

    def update(self, row_id: int, row: Any) -> Any:
        """Replace the row stored under ``row_id`` and return the old one."""
        with self._lock:
            self._check_open()
            old = self.get(row_id)
            old_entity, entity = type(old), type(row)
            if old_entity is not entity:
                self._remove(old_entity, row_id)
                self._changed(old_entity, old, None)
            self._write(entity, row_id, row)
            self._row_types[row_id] = entity
            self._changed(entity, old if old_entity is entity else None, row)
            return old

    def delete(self, row_id: int) -> Any:
        """Remove the row stored under ``row_id`` and return it."""
        with self._lock:
            self._check_open()
            old = self.get(row_id)
            entity = self._row_types.pop(row_id)
            self._remove(entity, row_id)
            self._changed(entity, old, None)
            return old

    def get(self, row_id: int) -> Any:
        with self._lock:
            entity = self._row_types.get(row_id)
            if entity is None:
                raise KeyError(f"Row not found: {row_id}")
            return self._tables[entity][row_id]

    def rows(self, entity: Type[Any]) -> List[Any]:
        """All rows of exactly ``entity``, in insertion order."""
        with self._lock:
            return list(self._tables.get(entity, {}).values())

    def _write(self, entity: Type[Any], row_id: int, row: Any) -> None:
        table = dict(self._tables.get(entity, {}))
        table[row_id] = row
        self._publish(entity, table)

    def _remove(self, entity: Type[Any], row_id: int) -> None:
        table = dict(self._tables[entity])
        del table[row_id]
        self._publish(entity, table)

    def _publish(self, entity: Type[Any], table: Table) -> None:
        # Published mappings are never mutated again; read contexts share them.
        tables = dict(self._tables)
        if table:
            tables[entity] = table
        else:
            tables.pop(entity, None)
        self._tables = tables
        self._revision += 1
        self._stats["mutations"] += 1

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def batch(self) -> "_BatchContext":
        """
        Context manager for batching mutations.

        Each interested feed receives a single notification when the
        outermost batch exits, whatever the number of mutations inside.

        Usage:
            with store.batch():
                store.insert(a)
                store.insert(b)
                # Notifications sent here
        """
        return _BatchContext(self)

    def _changed(self, entity: Type[Any], old: Any, new: Any) -> None:
        if self._batch_depth:
            self._batch_events.append((entity, old, new))
            return
        self._dispatch([(entity, old, new)])

    def _dispatch(self, events: List[Tuple[Type[Any], Any, Any]]) -> None:
        interested: Set[ChangeFeed] = set()
        for entity, old, new in events:
            for cls in entity.__mro__:
                for feed in self._feeds.get(cls, ()):
                    if feed not in interested and self._is_relevant(feed.key, old, new):
                        interested.add(feed)

        for feed in interested:
            self._stats["notifications"] += 1
            feed.notify()

    @staticmethod
    def _is_relevant(key: RelevanceKey, old: Any, new: Any) -> bool:
        if key.predicate is None:
            return True
        for row in (old, new):
            if row is None or not isinstance(row, key.entity):
                continue
            try:
                if key.predicate(row):
                    return True
            except Exception as e:
                logging.error(f"Relevance predicate failed for {row!r}: {e}")
                return True
        return False

    def observe_changes(self, key: RelevanceKey) -> ChangeFeed:
        """
        Register a change feed for ``key``.

        Raises:
            StoreError: If called off the registration thread
            StoreClosedError: If the store is closed
        """
        current = threading.current_thread()
        if current is not self._registration_thread:
            raise StoreError(
                f"change observers must be registered on thread "
                f"{self._registration_thread.name!r}, not {current.name!r}"
            )
        with self._lock:
            self._check_open()
            feed = ChangeFeed(key, self._release_feed)
            self._feeds.setdefault(key.entity, set()).add(feed)
            logging.debug(f"Registered change feed for {key.entity.__name__}")
            return feed

    def _release_feed(self, feed: ChangeFeed) -> None:
        with self._lock:
            feeds = self._feeds.get(feed.key.entity)
            if feeds is None or feed not in feeds:
                return
            feeds.discard(feed)
            if not feeds:
                del self._feeds[feed.key.entity]
            logging.debug(f"Released change feed for {feed.key.entity.__name__}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def create_read_context(self) -> MemoryReadContext:
        with self._lock:
            self._check_open()
            return MemoryReadContext(self._revision, self._tables)

    def execute(
        self,
        context: MemoryReadContext,
        descriptor: QueryDescriptor,
        token: Optional[CancellationToken] = None,
    ) -> List[Any]:
        """
        Run ``descriptor`` against the snapshot held by ``context``.

        Raises:
            StoreError: If the context is foreign or the predicate/sort fails
            StoreClosedError: If the store is closed
            FetchCancelledError: If ``token`` is cancelled mid-scan
        """
        if not isinstance(context, MemoryReadContext):
            raise StoreError(f"Unsupported read context: {context!r}")

        cache_key = (context.revision, descriptor)
        with self._lock:
            self._check_open()
            self._stats["fetches"] += 1
            try:
                cached = self._cache.get(cache_key)
            except TypeError:
                cache_key = None
                cached = None
            if cached is not None:
                self._stats["cache_hits"] += 1
                return list(cached)

        try:
            rows = self._scan(context, descriptor, token)
        except FetchCancelledError:
            raise
        except Exception as e:
            raise StoreError(f"Failed to execute {descriptor!r}: {e}") from e

        if cache_key is not None:
            with self._lock:
                self._cache[cache_key] = tuple(rows)
        return rows

    def _scan(
        self,
        context: MemoryReadContext,
        descriptor: QueryDescriptor,
        token: Optional[CancellationToken],
    ) -> List[Any]:
        matched: List[Tuple[int, Any]] = []
        for entity, table in context.tables.items():
            if not issubclass(entity, descriptor.entity):
                continue
            for row_id, row in table.items():
                if token is not None:
                    token.raise_if_cancelled()
                if descriptor.predicate is None or descriptor.predicate(row):
                    matched.append((row_id, row))

        matched.sort(key=operator.itemgetter(0))
        rows = [row for _, row in matched]

        if descriptor.sort_by is not None:
            rows.sort(key=_sort_key(descriptor.sort_by), reverse=descriptor.reverse)
        elif descriptor.reverse:
            rows.reverse()

        end = None if descriptor.limit is None else descriptor.offset + descriptor.limit
        return rows[descriptor.offset : end]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the store. Open feeds fail with StoreClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            feeds = [feed for group in self._feeds.values() for feed in group]
            self._feeds.clear()
            self._cache.clear()
        for feed in feeds:
            feed.fail(StoreClosedError("store was closed"))

    def __enter__(self) -> "InMemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"revision={self._revision}"
        return f"InMemoryStore({len(self)} rows, {state})"


def _sort_key(sort_by: Any) -> Callable[[Any], Any]:
    if callable(sort_by):
        return sort_by
    if isinstance(sort_by, str):
        return operator.attrgetter(sort_by)
    return operator.attrgetter(*sort_by)


class _BatchContext:
    """Context manager for batch updates."""

    def __init__(self, store: InMemoryStore):
        self.store = store

    def __enter__(self):
        with self.store._lock:
            self.store._batch_depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        with self.store._lock:
            self.store._batch_depth -= 1
            if self.store._batch_depth:
                return False
            events, self.store._batch_events = self.store._batch_events, []
            if events:
                self.store._dispatch(events)
        return False
