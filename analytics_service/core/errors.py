"""Error taxonomy shared by the service layers and the HTTP boundary."""

from fastapi import status


class AnalyticsError(Exception):
    """Base error; ``status_code`` is what the API answers with."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(AnalyticsError):
    """No credential was supplied."""

    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidCredential(AnalyticsError):
    """The credential does not belong to any tenant."""

    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidEvent(AnalyticsError):
    """Missing required event field or malformed batch."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidQuery(AnalyticsError):
    status_code = status.HTTP_400_BAD_REQUEST


class StoreUnavailable(AnalyticsError):
    """Durable store transaction failed; nothing was committed."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class IndexUnavailable(AnalyticsError):
    """Aggregation index write or read failed."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AggregationUnavailable(IndexUnavailable):
    """A query could not be answered by the aggregation index."""


class DeliveryFailure(AnalyticsError):
    """A single stream subscriber could not take a message."""
