class ApiError(Exception):
    """Error that maps directly onto a JSON error response."""

    status = 500
    code = None

    def __init__(self, message: str, *, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        body = {'error': self.message}
        if self.code:
            body['code'] = self.code
        if self.retry_after_seconds is not None:
            body['retry_after_seconds'] = self.retry_after_seconds
        return body


class ClientInputError(ApiError):
    status = 400


class UpstreamTimeout(ApiError):
    # Retryable by the client, so reported as 400 rather than a server fault.
    status = 400


class BotCheckFailed(ApiError):
    status = 403
    code = 'BOT_CHECK_FAILED'


class QuotaExceeded(ApiError):
    status = 429
    code = 'DAILY_LIMIT_EXCEEDED'

    def __init__(self, limit: int, retry_after_seconds: int):
        super().__init__(
            f'You have exceeded the limit of {limit} downloads per IP in 24 hours.',
            retry_after_seconds=retry_after_seconds,
        )


class InternalFailure(ApiError):
    status = 500
