"""Custom application exceptions.

Every exception carries a ``kind`` so clients can tell apart errors they
should show (admission, validation), errors that mean their view is stale
(transition) and errors worth an automatic retry (transient).
"""


class AppException(Exception):
    """Base application exception."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, status_code: int = 500, code: str | None = None):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__.removesuffix("Exception")
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    kind = "not_found"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    kind = "auth"

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    kind = "auth"

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    kind = "validation"

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ValidationException(AppException):
    """Validation error exception."""

    kind = "validation"

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


# Admission errors: the caller picks another slot


class AdmissionException(AppException):
    """Booking was not admitted against the requested slot."""

    kind = "admission"

    def __init__(self, message: str, status_code: int = 409):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=status_code)


class SlotFullException(AdmissionException):
    """Slot has no remaining capacity."""

    def __init__(self, message: str = "Schedule slot is full, please choose another time"):
        super().__init__(message)


class SlotClosedException(AdmissionException):
    """Slot is inactive and admits no new bookings."""

    def __init__(self, message: str = "Schedule slot is closed for booking"):
        super().__init__(message)


class InvalidSlotException(AdmissionException):
    """Slot does not exist or does not match the booking request."""

    def __init__(self, message: str = "Schedule slot is not valid for this booking"):
        super().__init__(message, status_code=422)


# Transition errors: the caller's view of the queue is stale


class TransitionException(AppException):
    """State machine rejected an action."""

    kind = "transition"
    retryable = True

    def __init__(self, message: str):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InvalidTransitionException(TransitionException):
    """Action is not allowed from the appointment's current status."""

    def __init__(self, message: str = "Transition is not allowed from the current status"):
        super().__init__(message)


class DoctorBusyException(TransitionException):
    """Doctor already has an appointment in progress for that day."""

    def __init__(
        self, message: str = "Another examination is in progress, finish it before starting"
    ):
        super().__init__(message)


class QueueEmptyException(TransitionException):
    """No waiting appointment to call."""

    def __init__(self, message: str = "No waiting appointment left to call"):
        super().__init__(message)


# Transient infrastructure errors


class ServiceUnavailableException(AppException):
    """Store or lock unavailable after bounded retries."""

    kind = "transient"
    retryable = True

    def __init__(self, message: str = "Service temporarily unavailable, please retry"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class LockTimeoutError(Exception):
    """Raised when a keyed lock could not be acquired in time."""
