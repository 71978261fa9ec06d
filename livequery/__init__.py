"""
LiveQuery - Push Streams over Pull Queries
==========================================

Turn a query against a mutable store into an async stream of freshly computed
results: an eager initial load, then one re-fetch per relevant change, with
only the latest result buffered for slow consumers.
"""

from .buffer import LatestValueBuffer
from .descriptor import (
    QueryDescriptor,
    RelevanceKey,
    count,
    first,
    to_list,
    to_none,
)
from .dispatch import ExecutionContext, InlineContext, LoopContext, WorkerPool
from .errors import (
    FetchCancelledError,
    LiveQueryError,
    MergeError,
    StoreClosedError,
    StoreError,
    SubscriptionError,
)
from .memory_store import ChangeFeed, InMemoryStore, MemoryReadContext
from .observer import QueryObserver, ResultStream, SubscriptionState
from .protocols import ObservableQuery, PersistentStore, ReadContext, UpdateSource
from .query import DescriptorQuery
from .signals import (
    TICK,
    CancellationToken,
    SignalMerge,
    UpdateSignal,
    initial_load,
)

__version__ = "0.1.0"

__all__ = [
    # Descriptors and transforms
    "QueryDescriptor",
    "RelevanceKey",
    "to_none",
    "to_list",
    "count",
    "first",
    # Observable query and controller
    "DescriptorQuery",
    "QueryObserver",
    "ResultStream",
    "SubscriptionState",
    # Streaming primitives
    "LatestValueBuffer",
    "SignalMerge",
    "UpdateSignal",
    "TICK",
    "initial_load",
    "CancellationToken",
    # Execution contexts
    "ExecutionContext",
    "InlineContext",
    "LoopContext",
    "WorkerPool",
    # Store protocols and the in-memory reference store
    "PersistentStore",
    "ReadContext",
    "ObservableQuery",
    "UpdateSource",
    "InMemoryStore",
    "MemoryReadContext",
    "ChangeFeed",
    # Exceptions
    "LiveQueryError",
    "StoreError",
    "StoreClosedError",
    "MergeError",
    "FetchCancelledError",
    "SubscriptionError",
]
