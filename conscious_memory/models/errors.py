"""
Error taxonomy shared by the memory services and the store/provider clients.
"""


class ConsciousMemoryError(Exception):
    """Base class for all conscious memory errors."""
    pass


class ValidationError(ConsciousMemoryError):
    """Invalid input such as out-of-range importance or a malformed filter combination. Never retried."""
    pass


class NotFound(ConsciousMemoryError):
    """The requested memory does not exist."""

    def __init__(self, memory_id: str):
        super().__init__(f'Memory {memory_id} not found')
        self.memory_id = memory_id


class ProviderUnavailable(ConsciousMemoryError):
    """An embedding or extraction provider could not be reached; callers fall back locally."""
    pass


class SyncItemError(ConsciousMemoryError):
    """A single memory could not be projected into the graph. Counted, never aborts a sync run."""

    def __init__(self, memory_id: str, reason: str):
        super().__init__(f'Failed to sync memory {memory_id}: {reason}')
        self.memory_id = memory_id
        self.reason = reason


class StoreConnectivityError(ConsciousMemoryError):
    """The vector store or graph store is unreachable. Fatal to the current operation."""
    pass
