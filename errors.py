# errors.py: error taxonomy shared by the store and the HTTP layer


class AppError(Exception):
    """Base for errors that map onto an HTTP response."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


# -------------------------
# Persistence
# -------------------------
class PersistenceError(Exception):
    """Snapshot could not be read or written. Never fatal to a request."""


class HydrationError(PersistenceError):
    pass


class FlushError(PersistenceError):
    pass


class StoreError(Exception):
    """Unknown collection, or an operation the collection does not support."""


class ConfigurationError(Exception):
    """Startup configuration is unusable; the process must not boot."""
