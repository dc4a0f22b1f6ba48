class PennywiseError(Exception):
    """Base class for errors raised by the ledger and its jobs."""

    status_code = 500


class AuthorizationError(PennywiseError):
    """No identity, or the entity is not owned by the requester."""

    status_code = 401


class ValidationError(PennywiseError):
    status_code = 400


class NotFoundError(PennywiseError):
    status_code = 404


class StorageError(PennywiseError):
    """Raised when a persistence call fails; the in-flight operation is aborted."""

    status_code = 500


class ExternalServiceError(PennywiseError):
    """Raised by AI extraction or notification delivery failures."""

    status_code = 502
