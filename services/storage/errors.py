"""Error taxonomy shared by every storage backend."""


class StorageError(Exception):
    """Base class for every failure raised by a storage backend."""


class DuplicateKey(StorageError):
    """A unique constraint (username) would be violated."""


class NotInitialized(StorageError):
    """An operation was invoked before ``init()`` or after ``close()``."""

    def __init__(self, message: str = "Storage engine not initialized. Call init() first."):
        super().__init__(message)


class SerializationError(StorageError):
    """quiz_data/user_answers could not be encoded or decoded."""


class ConstraintViolation(StorageError):
    """A foreign-key, not-null or check constraint would be violated."""
