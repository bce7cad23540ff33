"""Queue error taxonomy."""


class QueueError(Exception):
    """Base class for queue errors."""


class InvalidConfiguration(QueueError):
    """A registered driver does not satisfy the provider contract."""


class UnknownProvider(QueueError):
    """A driver name could not be resolved to a provider."""


class StorageError(QueueError):
    """The provider's backing store failed."""


class JobSerializationError(QueueError):
    """A job could not be encoded for storage or decoded from it."""


class JobTimeoutError(QueueError):
    """A job ran past its allowed time."""


class MaxAttemptsExceeded(QueueError):
    """A job was claimed more times than it allows."""
