"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class UpstreamHTTPError(ServiceError):
    """Transport failure, non-2xx status or undecodable body."""

    def __init__(
        self,
        message: str,
        service_id: str | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, service_id=service_id)


class ApiRejectedError(ServiceError):
    """Upstream answered but has no usable location for the address.

    Not retried and never counted as a breaker failure.
    """

    def __init__(self, ip: str, reason: str, service_id: str | None = None):
        self.ip = ip
        self.reason = reason
        super().__init__(f"No location for {ip}: {reason}", service_id=service_id)


# Failures worth another attempt
RETRYABLE_ERRORS = (RequestTimeoutError, UpstreamHTTPError)
