"""
Dispatch error taxonomy.

Every failure the engine can report is one of these classes.  They are
raised, never returned as sentinels, and the API layer maps each to an HTTP
status.  Only ``TransientStoreFailure`` is safe to retry from the top.
"""


class DispatchError(Exception):
    """Base class for all dispatch-engine failures."""

    code = "dispatch_error"

    def __init__(self, message: str = ""):
        self.message = message or (self.__doc__ or self.code).strip()
        super().__init__(self.message)


class NotFound(DispatchError):
    """Booking or driver does not exist."""

    code = "not_found"


class InvalidTransition(DispatchError):
    """Requested status change is not an edge of the transition table."""

    code = "invalid_transition"


class Forbidden(DispatchError):
    """Actor is not authorised for this transition."""

    code = "forbidden"


class PreconditionFailed(DispatchError):
    """Booking or driver is no longer in the expected state."""

    code = "precondition_failed"


class DriverUnavailable(PreconditionFailed):
    """Driver no longer available."""

    code = "driver_unavailable"


class NoCandidates(DispatchError):
    """No available drivers."""

    code = "no_candidates"


class TransientStoreFailure(DispatchError):
    """Store transaction timed out or kept conflicting; safe to retry."""

    code = "transient_store_failure"


class ValidationFailed(DispatchError):
    """Request is well-formed but unusable (e.g. missing pickup coordinates)."""

    code = "validation_failed"


class WriteConflict(Exception):
    """
    A concurrent transaction committed first.

    Raised by store adapters for a single attempt; the Transactor turns it
    into a retry and, once retries are exhausted, into
    ``TransientStoreFailure``.
    """


class InvalidCoordinates(ValueError):
    """Latitude/longitude is NaN, infinite or out of range."""
