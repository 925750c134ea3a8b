"""Error kinds raised by the reconciliation core.

The HTTP layer maps each ``kind`` to a status code; nothing below it
knows about transport.
"""


class ReconciliationError(Exception):
    kind = "reconciliation_error"


class InvalidRequest(ReconciliationError):
    """Neither email nor phoneNumber was supplied."""

    kind = "invalid_request"


class TransientStoreFailure(ReconciliationError):
    """The store was unreachable or stayed locked past the retry budget.

    Nothing was committed, so the caller may retry the whole request.
    """

    kind = "transient_store_failure"


class IntegrityViolation(ReconciliationError):
    """A component failed its consistency check after reconciliation."""

    kind = "integrity_violation"
