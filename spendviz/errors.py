class SpendvizError(RuntimeError):
    """Base class for errors raised by the finance core."""


class DatabaseInitError(SpendvizError):
    """Raised when the database cannot be opened or migrated."""


class AccessDeniedError(SpendvizError):
    """Raised when a record does not exist in the acting user's scope."""


class CategoryInUseError(SpendvizError):
    """Raised when a category is still referenced and cannot be deleted."""


class DuplicateRecordError(SpendvizError):
    """Raised when a create would violate a uniqueness constraint the caller should see."""


class ValidationError(ValueError):
    """Raised when request input is malformed."""


class MappingError(ValidationError):
    """Raised when a CSV column mapping is malformed."""
