"""Error taxonomy for the tutoring client."""


class TutorError(Exception):
    """Base class for all tutoring client errors."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class GatewayError(TutorError):
    """The gateway refused or failed the request before streaming began.

    Only this branch of the hierarchy is surfaced to the user.
    """

    status_code: int | None = None

    def __init__(self, message: str | None = None, status_code: int | None = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class RateLimitedError(GatewayError):
    user_message = "Rate limit exceeded. Please wait a moment and try again."
    status_code = 429


class PaymentRequiredError(GatewayError):
    user_message = "Credits required. Please add credits to continue."
    status_code = 402


class RequestFailedError(GatewayError):
    user_message = "Failed to get response"


class StreamReadError(TutorError):
    """The transport failed after the response body started streaming."""

    user_message = "The response was interrupted."


class MalformedEventIgnored(TutorError):
    """A stream line that could not be decoded; never leaves the decoder."""


class SessionStateError(TutorError):
    """An operation was invoked in a phase that does not allow it."""
