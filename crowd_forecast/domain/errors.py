"""Exception taxonomy shared by the forecasting services."""

from __future__ import annotations


class ForecastError(Exception):
    """Base exception for forecasting workflow failures."""


class InvalidObservationError(ForecastError):
    """Raised when an occupancy count is negative or not a number."""


class InsufficientHistoryError(ForecastError):
    """Raised when a zone lacks the points an operation needs.

    Callers treat this as a trigger for last-observed forecasting rather than
    a failure.
    """

    def __init__(self, zone_id: str, available: int, required: int) -> None:
        super().__init__(
            f"zone {zone_id} has {available} points; {required} required"
        )
        self.zone_id = zone_id
        self.available = available
        self.required = required


class ModelNotFoundError(ForecastError):
    """Raised when a zone is unknown to the model store."""


class PersistenceError(ForecastError):
    """Raised when the storage backend rejects a read or write."""


class UpstreamFetchError(ForecastError):
    """Raised when the observation source cannot be reached or parsed."""


class InvalidConfigurationError(ForecastError, ValueError):
    """Raised when smoothing, blend or cache parameters are out of range."""
