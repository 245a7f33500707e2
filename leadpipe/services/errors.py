class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_STATUSES = {"queued", "active", "completed", "failed"}
JOB_TERMINAL_STATUSES = {"completed", "failed"}
MATCHMAKING_STATUSES = {"queued", "running", "completed", "failed"}
MATCHMAKING_TERMINAL_STATUSES = {"completed", "failed"}
DELIVERY_LOG_STATUSES = {"delivered", "failed"}

LEASE_EXPIRED_ERROR = "lease_expired"
