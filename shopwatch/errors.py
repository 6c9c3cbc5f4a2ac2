"""Custom exceptions for shopwatch services."""

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details}


class ValidationError(ServiceError):
    """Raised when a request is missing fields or carries malformed input."""

    status_code = 400

    @classmethod
    def missing(cls, fields: list[str]) -> "ValidationError":
        return cls(f"Missing required fields: {', '.join(fields)}", fields=fields)


class Conflict(ServiceError):
    """Raised when a unique value (e.g. an email) is already taken."""

    status_code = 409


class Unauthorized(ServiceError):
    """Raised on bad credentials."""

    status_code = 401

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class NotFound(ServiceError):
    """Raised when a document id does not exist."""

    status_code = 404


class UpstreamError(ServiceError):
    """Raised when a call to a peer service fails."""

    status_code = 400


class InsufficientStock(ServiceError):
    """Raised when a product does not have enough stock for a request."""

    status_code = 400

    def __init__(self, message: str = "Insufficient stock", available: Optional[int] = None,
                 requested: Optional[int] = None, **details: Any):
        if available is not None:
            details["available"] = available
        if requested is not None:
            details["requested"] = requested
        super().__init__(message, **details)


class InternalError(ServiceError):
    """Raised on unexpected or database failures."""

    status_code = 500


class MetricsError(Exception):
    """Base exception for metrics registry misuse."""

    pass


class DuplicateMetricError(MetricsError):
    """Raised when a metric name is registered twice."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Metric already registered: {name}")


class UnknownMetricError(MetricsError):
    """Raised when recording against a metric that was never registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown metric: {name}")


class LabelMismatchError(MetricsError):
    """Raised when supplied labels do not match a metric's label names."""

    def __init__(self, name: str, expected: tuple[str, ...], got: tuple[str, ...]):
        self.name = name
        self.expected = expected
        self.got = got
        super().__init__(
            f"Labels for {name} must be {list(expected)}, got {list(got)}"
        )
