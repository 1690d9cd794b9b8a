"""Registry error taxonomy.

Every precondition failure in the registry and the transfer workflow is one of
these. The HTTP layer maps `status_code`/`code` onto the response envelope;
`message` is safe to show to callers and never carries driver errors.
"""


class RegistryError(Exception):
    """Base class for errors the API reports to callers."""

    status_code = 500
    code = "registry_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RegistryError):
    """Malformed or out-of-range input."""

    status_code = 400
    code = "validation_error"


class NotAuthenticated(RegistryError):
    """Missing, expired or unknown credentials."""

    status_code = 401
    code = "not_authenticated"


class PermissionDenied(RegistryError):
    """Role or ownership check failed."""

    status_code = 403
    code = "permission_denied"


class NotFound(RegistryError):
    status_code = 404
    code = "not_found"


class InvalidState(RegistryError):
    """Operation is not legal from the record's current status."""

    status_code = 409
    code = "invalid_state"


class Conflict(RegistryError):
    """Uniqueness or invariant violation, e.g. a second pending transfer."""

    status_code = 409
    code = "conflict"


class StorageFailure(RegistryError):
    """Backing store unavailable. Nothing was written; callers may retry."""

    status_code = 503
    code = "storage_failure"

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class LedgerTransactionFailed(StorageFailure):
    """A submitted ledger transaction reverted or was never confirmed.

    Terminal for this attempt: the database side was rolled back, but the
    caller should inspect the pending transfer before trying again.
    """

    status_code = 502
    code = "ledger_transaction_failed"

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message, retryable=False)
        self.tx_hash = tx_hash
