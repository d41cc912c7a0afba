"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, message is stored as an attribute so callers can log it without parsing
    # str(exception). Don't raise this directly - pick a subclass so callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    # Yo, entity_type and entity_id are kept separately so log lines can carry them as
    # structured fields. Use Optional returns instead when "missing" is an everyday outcome.
    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class DuplicateEntityException(DomainException):
    """Raised when trying to create a duplicate entity.

    Example: adding a subscription whose URL is already subscribed.
    """

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} already exists")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when entity validation fails."""

    pass


class InvalidStateException(DomainException):
    """Raised when an entity is in an invalid state for the requested operation.

    Example: completing a queue item that was never started, or cancelling
    one that already completed.
    """

    pass


class BusinessRuleViolation(DomainException):
    """A business rule was violated.

    Example:
        raise BusinessRuleViolation("Staging playlist already migrated")
    """

    pass


class ConfigurationError(DomainException):
    """Application misconfiguration.

    Example:
        raise ConfigurationError("Download directory is not writable")
    """

    pass


class ExternalServiceError(DomainException):
    """An external collaborator (fetch tool, library app) returned an error."""

    pass


class FetchToolError(ExternalServiceError):
    """The external fetch tool could not be run or failed.

    Carries the exit code (None when the process never started) and the
    tail of its standard error for diagnostics.
    """

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stderr: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class LibraryServiceError(ExternalServiceError):
    """The external library service failed a request."""

    pass


# Listen up - the two "exists" errors are NOT real failures! The library says "I already have
# this", and callers recover by looking the thing up and merging into it. Only surface them
# when that lookup also fails.
class LibraryItemExistsError(LibraryServiceError):
    """The library already holds an item for this file/url."""

    pass


class LibraryFolderExistsError(LibraryServiceError):
    """The library already holds a folder with this name."""

    pass


__all__ = [
    "BusinessRuleViolation",
    "ConfigurationError",
    "DomainException",
    "DuplicateEntityException",
    "EntityNotFoundException",
    "ExternalServiceError",
    "FetchToolError",
    "InvalidStateException",
    "LibraryFolderExistsError",
    "LibraryItemExistsError",
    "LibraryServiceError",
    "ValidationException",
]
