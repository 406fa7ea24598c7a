class EngineError(ValueError):
    pass


class NotFoundError(EngineError):
    pass


class ForbiddenError(EngineError):
    pass


class ValidationError(EngineError):
    pass


class TransientStorageError(EngineError):
    """A read or write against the store failed; safe to retry."""
