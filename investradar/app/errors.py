"""Error taxonomy shared by the HTTP surface, the quote aggregator and the stream codec."""


class InvestRadarError(Exception):
    """Base error carrying the HTTP status and the message shown to the user."""

    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigError(InvestRadarError):
    status_code = 500
    default_message = "The server is missing required configuration."


class ValidationError(InvestRadarError):
    status_code = 400
    default_message = "The request is missing required fields."


class NotFoundError(InvestRadarError):
    status_code = 404
    default_message = "No data found for the requested symbol."


class RateLimitError(InvestRadarError):
    status_code = 429
    default_message = (
        "The API call limit has been reached (about 5 requests per minute). "
        "Please wait a minute and try again."
    )


class UpstreamError(InvestRadarError):
    """Any other third-party failure. Details go to the log, not to the user."""

    status_code = 500
    default_message = "An error occurred while contacting an upstream service."

    def __init__(self, message: str | None = None, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


class StreamDecodeError(InvestRadarError):
    """One frame of the analysis stream could not be decoded."""

    default_message = "Failed to decode a frame from the analysis stream."


RATE_LIMIT_PHRASE = "call frequency"


def is_rate_limit_message(message: str) -> bool:
    return RATE_LIMIT_PHRASE in message.lower()
