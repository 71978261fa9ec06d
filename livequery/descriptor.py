"""
LiveQuery Descriptor - Immutable Fetch Specifications
=====================================================

A ``QueryDescriptor`` describes *what* to fetch from a store: the entity type,
an optional row predicate, a sort order and a window (offset/limit). It carries
no behaviour of its own beyond being handed to a store's ``execute`` primitive,
and it is frozen so a single descriptor can back any number of concurrent
subscriptions.

Descriptors also know their *relevance key*, the criterion a store uses to
decide whether a mutation should notify the subscriptions built on them.

Transforms turn the fetched rows into the value delivered to consumers. They
must be pure: they run on worker threads and may run concurrently for several
subscriptions at once.

Example:
    ```python
    from livequery import QueryDescriptor, count

    unread = QueryDescriptor(Message, predicate=lambda m: not m.read)

    async for n in unread.observe(count).values(store):
        print(f"{n} unread")
    ```
"""

from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

if TYPE_CHECKING:
    from .observer import QueryObserver

T = TypeVar("T")
R = TypeVar("R")

Predicate = Callable[[Any], bool]
SortKey = Union[str, Tuple[str, ...], Callable[[Any], Any]]
Transform = Callable[[List[T]], R]


# ============================================================================
# STOCK TRANSFORMS
# ============================================================================


def to_none(rows: Sequence[Any]) -> None:
    """Unit transform: the consumer only wants to know that something changed."""
    return None


def to_list(rows: Sequence[T]) -> List[T]:
    return list(rows)


def count(rows: Sequence[Any]) -> int:
    return len(rows)


def first(rows: Sequence[T]) -> Optional[T]:
    """Return the first fetched row, or None when nothing matched."""
    return rows[0] if rows else None


# ============================================================================
# RELEVANCE KEY
# ============================================================================


@dataclass(frozen=True)
class RelevanceKey:
    """
    Criterion used by a store to route change notifications.

    Attributes:
        entity: Entity type whose mutations are relevant (subclasses included)
        predicate: Optional narrowing; when set only mutations of rows that
            satisfy it (before or after the change) are relevant
    """

    entity: Type[Any]
    predicate: Optional[Predicate] = None

    def covers(self, entity: Type[Any]) -> bool:
        return issubclass(entity, self.entity)


# ============================================================================
# QUERY DESCRIPTOR
# ============================================================================


@dataclass(frozen=True)
class QueryDescriptor(Generic[T]):
    """
    Immutable description of a fetch over rows of type ``entity``.

    Attributes:
        entity: Row type to fetch; rows of subclasses are included
        predicate: Row filter, ``None`` matches every row
        sort_by: Attribute name, tuple of attribute names or key callable
        reverse: Sort descending
        offset: Number of leading rows to skip after sorting
        limit: Maximum number of rows to return, ``None`` for no limit
        narrow_relevance: Scope change notifications to rows matching
            ``predicate`` instead of every mutation of ``entity``
    """

    entity: Type[T]
    predicate: Optional[Predicate] = None
    sort_by: Optional[SortKey] = None
    reverse: bool = False
    offset: int = 0
    limit: Optional[int] = None
    narrow_relevance: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.entity, type):
            raise TypeError(f"entity must be a type, got {self.entity!r}")
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")
        if self.limit is not None and self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")

    @property
    def relevance_key(self) -> RelevanceKey:
        if self.narrow_relevance and self.predicate is not None:
            return RelevanceKey(self.entity, self.predicate)
        return RelevanceKey(self.entity)

    def matches(self, row: Any) -> bool:
        if not isinstance(row, self.entity):
            return False
        return self.predicate is None or bool(self.predicate(row))

    def observe(
        self, transform: Optional[Callable[[List[T]], R]] = None, **kwargs: Any
    ) -> "QueryObserver[T, R]":
        """
        Create an observer that streams ``transform(rows)`` for this descriptor.

        Args:
            transform: Pure function applied to every fetch. Defaults to the
                unit transform, which turns the stream into change notifications.
            **kwargs: Forwarded to ``QueryObserver`` (``registrar``, ``worker``)

        Returns:
            A reusable QueryObserver; call ``values(store)`` to subscribe.
        """
        from .observer import QueryObserver

        return QueryObserver(self, transform or to_none, **kwargs)

    def __repr__(self) -> str:
        parts = [self.entity.__name__]
        if self.predicate is not None:
            parts.append("filtered")
        if self.sort_by is not None:
            parts.append(f"sort_by={self.sort_by!r}")
        if self.reverse:
            parts.append("reverse")
        if self.offset:
            parts.append(f"offset={self.offset}")
        if self.limit is not None:
            parts.append(f"limit={self.limit}")
        return f"QueryDescriptor({', '.join(parts)})"
