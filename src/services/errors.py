"""Exceptions raised by the weather ingestion services."""

from __future__ import annotations


class WeatherServiceError(RuntimeError):
    """Base class for failures surfaced by the weather services."""


class CityNotFoundError(WeatherServiceError):
    """The geocoder returned no match for the requested place name."""

    def __init__(self, query: str) -> None:
        super().__init__(f"No geocoding match for {query!r}")
        self.query = query


class UpstreamError(WeatherServiceError):
    """An upstream provider failed or returned a payload we cannot use."""

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


__all__ = ["CityNotFoundError", "UpstreamError", "WeatherServiceError"]
