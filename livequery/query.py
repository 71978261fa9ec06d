"""
LiveQuery Observable Query - Descriptor Bound to a Transform
============================================================

``DescriptorQuery`` pairs a ``QueryDescriptor`` with a pure transform. It is a
capability object, not a session: it holds no state between calls, so one
instance can serve any number of concurrent subscriptions.

- ``fetch`` opens a fresh read context on every call, executes the descriptor
  and applies the transform. Store failures propagate unchanged.
- ``make_updates_stream`` asks the store for a change feed scoped to the
  descriptor's relevance key. Call it on the store's designated context.
"""

from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

from .descriptor import QueryDescriptor, to_none
from .protocols import PersistentStore, UpdateSource
from .signals import CancellationToken

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class DescriptorQuery(Generic[T, R]):
    descriptor: QueryDescriptor[T]
    transform: Callable[[List[T]], R] = to_none

    def fetch(
        self, store: PersistentStore, token: Optional[CancellationToken] = None
    ) -> R:
        context = store.create_read_context()
        rows = store.execute(context, self.descriptor, token)
        return self.transform(rows)

    def make_updates_stream(self, store: PersistentStore) -> UpdateSource:
        return store.observe_changes(self.descriptor.relevance_key)

    def __repr__(self) -> str:
        name = getattr(self.transform, "__name__", repr(self.transform))
        return f"DescriptorQuery({self.descriptor!r}, {name})"
