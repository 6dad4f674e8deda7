"""
Sync processor errors.
"""


class SyncError(Exception):
    """Error during sync process."""
    pass


class SyncInProgressError(SyncError):
    """Another sync is already running."""
    pass


class InvalidSyncWindowError(SyncError, ValueError):
    """Manual sync window could not be parsed or is empty."""
    pass


class RecordReconciliationError(SyncError):
    """A single order could not be written. Never aborts the batch."""

    def __init__(self, external_id: str, message: str):
        self.external_id = external_id
        super().__init__(f"{external_id or '<no id>'}: {message}")
