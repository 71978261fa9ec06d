"""
LiveQuery Protocols - Collaborator Interfaces
=============================================

This module defines the structural interfaces the live query core depends on.

The persistent store is an external collaborator: livequery never inspects its
schema, transactions or storage format. It only needs to

- open cheap, side-effect-free read contexts,
- execute a descriptor inside one of them, and
- hand out a change feed scoped to a relevance key.

Key Benefits:
- No circular imports (protocols don't import concrete implementations)
- Runtime isinstance() support with @runtime_checkable
- Structural subtyping, so any store with the right methods plugs in
"""

from typing import (
    TYPE_CHECKING,
    AsyncIterator,
    List,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

if TYPE_CHECKING:
    from .descriptor import QueryDescriptor, RelevanceKey
    from .signals import CancellationToken, UpdateSignal

T = TypeVar("T")
R_co = TypeVar("R_co", covariant=True)


@runtime_checkable
class ReadContext(Protocol):
    """
    A short-lived read handle; one per fetch, never shared.

    Opaque to livequery: only the store that created it looks inside.
    """


@runtime_checkable
class UpdateSource(Protocol):
    """Long-lived async sequence of ticks produced by a store."""

    def __aiter__(self) -> AsyncIterator["UpdateSignal"]:
        ...

    async def __anext__(self) -> "UpdateSignal":
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class PersistentStore(Protocol):
    """
    Protocol for stores a live query can observe.

    Example:
        ```python
        def snapshot(store: PersistentStore, descriptor: QueryDescriptor) -> list:
            ctx = store.create_read_context()
            return store.execute(ctx, descriptor)
        ```
    """

    def create_read_context(self) -> ReadContext:
        """
        Open a read context. Must be cheap and free of side effects.

        Raises:
            StoreError: If the store is unusable
        """
        ...

    def execute(
        self,
        context: ReadContext,
        descriptor: "QueryDescriptor[T]",
        token: Optional["CancellationToken"] = None,
    ) -> List[T]:
        """
        Execute ``descriptor`` inside ``context`` and return the ordered rows.

        Stores that support mid-flight cancellation check ``token`` and raise
        ``FetchCancelledError``; others may ignore it.

        Raises:
            StoreError: If execution fails
        """
        ...

    def observe_changes(self, key: "RelevanceKey") -> UpdateSource:
        """
        Register for change notifications relevant to ``key``.

        Must be called on the store's designated registration context.
        """
        ...


@runtime_checkable
class ObservableQuery(Protocol[R_co]):
    """A query that can be fetched on demand and tells when to fetch again."""

    def fetch(
        self, store: PersistentStore, token: Optional["CancellationToken"] = None
    ) -> R_co:
        """Synchronously load and transform the results for the query."""
        ...

    def make_updates_stream(self, store: PersistentStore) -> UpdateSource:
        """Return a feed that ticks when the query needs to be updated."""
        ...
