"""Shared error types for cute."""


class CuteError(Exception):
    """Base exception for cute errors.

    Use this for user-facing errors that should have actionable messages.
    """


class InvalidCredentialFormat(CuteError):
    """A login string could not be split into user and password."""


class TransportConfigurationError(CuteError):
    """The transport rejected a configuration call."""


class ExecutionError(CuteError):
    """The request or download failed."""


class ExecutionTimeout(ExecutionError):
    """The request did not finish within the caller's timeout."""


class SerializationError(CuteError):
    """Stored command JSON could not be decoded."""


class FileAccessError(CuteError):
    """Reading or writing a local file failed."""


class PersistenceError(CuteError):
    """The saved command store could not be read or written."""
