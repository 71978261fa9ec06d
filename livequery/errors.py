"""
LiveQuery Errors - Exception Hierarchy
======================================

Every failure a live query can surface derives from ``LiveQueryError``.

Store failures (``StoreError``) come from the persistent store while creating a
read context, executing a descriptor or registering a change observer.
``MergeError`` wraps a failure of one of the merged update signal sources.
Both are fatal to the subscription that observed them.
"""


# ============================================================================
# EXCEPTIONS
# ============================================================================


class LiveQueryError(Exception):
    """Base class for all livequery errors."""

    pass


class StoreError(LiveQueryError):
    """Raised when the store cannot create a read context or execute a fetch."""

    pass


class StoreClosedError(StoreError):
    """Raised when a closed store is read from or observed."""

    pass


class MergeError(LiveQueryError):
    """Raised when one of the merged update signal sources fails."""

    pass


class FetchCancelledError(LiveQueryError):
    """Raised by a store that aborted a fetch because its token was cancelled."""

    pass


class SubscriptionError(LiveQueryError):
    """Raised when a result stream is used outside its lifecycle."""

    pass
