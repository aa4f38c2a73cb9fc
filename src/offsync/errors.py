"""Exception hierarchy for offsync.

Absence of a key or item is never an error: lookups return ``None``.
Conflicts are not errors either; they are recorded as the ``conflict``
status on the affected sync item.
"""


class OffsyncError(Exception):
    """Base class for all offsync errors."""


class StorageUnavailable(OffsyncError):
    """The durable tier could not be read or written.

    Treat as transient: callers may retry with backoff.
    """


class RemoteFailure(OffsyncError):
    """The remote collaborator failed to apply a mutation."""


class ItemNotFound(OffsyncError):
    """A sync item id does not exist in the queue."""

    def __init__(self, item_id: str):
        super().__init__(f"Sync item '{item_id}' not found")
        self.item_id = item_id


class InvalidTransition(OffsyncError):
    """A sync item cannot move to the requested status from its current one."""