"""Error types shared by the store, the generator and the HTTP layer."""


class TrackerError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TrackerError):
    """A request field is missing or malformed."""

    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class NotFound(TrackerError):
    status_code = 404


class ConflictError(TrackerError):
    """A payment already exists for the (subscription_id, due_date) pair."""

    status_code = 409


class StoreError(TrackerError):
    """The underlying database failed."""
