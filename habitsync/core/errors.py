"""Error taxonomy shared by the core and the shell.

Only ValidationError is meant to reach the user as a blocking failure.
Transport errors are absorbed by the sync engine; storage errors are
logged by the event store and never raised past it.
"""


class HabitSyncError(Exception):
    """Base class for all habitsync errors."""


class ValidationError(HabitSyncError):
    """A required field is missing or malformed. Raised before any I/O."""


class TransportError(HabitSyncError):
    """Network or HTTP failure talking to the remote store.

    Attributes:
        status_code: HTTP status, or None when the request never got a response
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Connectivity failures and server-side errors are worth retrying."""
        return self.status_code is None or self.status_code >= 500


class NotFoundError(TransportError):
    """The identifier does not exist remotely."""

    def __init__(self, message: str, status_code: int | None = 404) -> None:
        super().__init__(message, status_code)


class StorageError(HabitSyncError):
    """The local persistence medium failed."""


class MissingCredentialError(HabitSyncError):
    """A remote call was attempted without a session credential."""


class MalformedRecordError(HabitSyncError):
    """A wire record could not be decoded into activity events."""
