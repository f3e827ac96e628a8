"""
Error taxonomy shared by services, the HTTP API and the WebSocket gateway.

Running out of candidates is *not* an error: it is reported as a
``DispatchResult`` so callers can decide what to do with the ride.
"""


class DispatchError(Exception):
    """Base class. ``code`` is stable and safe to send to clients."""

    code = "dispatch_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DispatchError):
    code = "not_found"
    status_code = 404


class PreconditionViolation(DispatchError):
    code = "precondition_violation"
    status_code = 409


class InvalidStateTransition(PreconditionViolation):
    """Raised when a ride status change violates the state machine."""

    code = "invalid_transition"


class RideUnavailable(PreconditionViolation):
    """Another path already moved the ride out of PENDING."""

    code = "ride_unavailable"


class NotAuthorized(DispatchError):
    code = "not_authorized"
    status_code = 403


class AlreadyResponded(DispatchError):
    code = "already_responded"
    status_code = 409


class TransientDependencyError(DispatchError):
    code = "temporarily_unavailable"
    status_code = 503
