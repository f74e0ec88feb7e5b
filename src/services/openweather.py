import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Optional

import httpx

from config import settings
from services.errors import CityNotFoundError, UpstreamError

logger = logging.getLogger("cityweather.api.openweather")

KELVIN_OFFSET = 273.15
GEOCODE_PATH = "/geo/1.0/direct"
CURRENT_WEATHER_PATH = "/data/2.5/weather"
ONECALL_PATH = "/data/3.0/onecall"
TIME_MACHINE_PATH = "/data/3.0/onecall/timemachine"
FORECAST_HOURS = 24


def kelvin_to_celsius(value: float, digits: int | None = None) -> float | int:
    """Convert to Celsius, rounding halves up (275.65 K -> 3, 271.65 K -> -1)."""
    celsius = Decimal(str(value)) - Decimal(str(KELVIN_OFFSET))
    step = Decimal(1).scaleb(-(digits or 0))
    rounded = ((celsius / step) + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR) * step
    if digits is None:
        return int(rounded)
    return float(rounded)


@dataclass(slots=True)
class ProviderCall:
    """One outbound request as it should appear in the audit log."""

    url: str
    params: dict[str, Any]
    status_code: int | None
    body: Any

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300


@dataclass(slots=True)
class GeocodeResult:
    name: str
    latitude: float
    longitude: float
    country: str | None


@dataclass(slots=True)
class CurrentConditions:
    city: str | None
    temperature_c: int
    humidity_pct: float | None
    pressure_hpa: float | None
    wind_speed_m_s: float | None
    wind_deg: float | None
    clouds_pct: float | None
    description: str | None
    timezone_offset: int
    raw: dict[str, Any]


@dataclass(slots=True)
class ForecastHour:
    forecast_time: datetime
    temperature_c: float
    humidity_pct: float | None
    pressure_hpa: float | None
    wind_speed_m_s: float | None
    wind_deg: float | None
    clouds_pct: float | None


@dataclass(slots=True)
class HistoricalHour:
    timestamp: datetime
    timezone_offset: int
    temperature_c: float | None
    humidity_pct: float | None
    pressure_hpa: float | None
    wind_speed_m_s: float | None
    wind_deg: float | None
    clouds_pct: float | None


class OpenWeatherClient:
    def __init__(self, *, api_key: str | None = None, base_url: str | None = None) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return (self._base_url or settings.openweather_base_url).rstrip("/")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {
                "User-Agent": settings.weather_user_agent,
                "Accept": "application/json",
            }
            self._client = httpx.AsyncClient(headers=headers, timeout=settings.weather_request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, path: str, params: dict[str, Any]) -> ProviderCall:
        api_key = self._api_key or settings.openweather_api_key
        if not api_key:
            raise UpstreamError("OpenWeatherMap API key is not configured")
        url = f"{self.base_url}{path}"
        # The key stays out of anything we persist.
        logged_url = str(httpx.URL(url, params=params))
        client = await self._get_client()
        logger.debug("Fetching %s", logged_url)
        try:
            response = await client.get(url, params={**params, "appid": api_key})
        except httpx.HTTPError as exc:
            logger.warning("Request to %s failed: %s", logged_url, exc)
            return ProviderCall(url=logged_url, params=params, status_code=None, body={"error": str(exc)})
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return ProviderCall(url=logged_url, params=params, status_code=response.status_code, body=body)

    async def geocode(self, query: str) -> GeocodeResult:
        call = await self._request(GEOCODE_PATH, {"q": query, "limit": 1})
        if not call.ok:
            raise UpstreamError(
                f"Geocoding failed with status {call.status_code}",
                status_code=call.status_code,
                url=call.url,
            )
        if not isinstance(call.body, list):
            raise UpstreamError("Geocoding response is not a list", status_code=call.status_code, url=call.url)
        if not call.body:
            raise CityNotFoundError(query)
        match = call.body[0]
        if not isinstance(match, dict):
            raise UpstreamError("Geocoding match is malformed", url=call.url)
        latitude = _safe_value(match, "lat")
        longitude = _safe_value(match, "lon")
        name = match.get("name")
        if latitude is None or longitude is None or not isinstance(name, str) or not name:
            raise UpstreamError("Geocoding match is missing name or coordinates", url=call.url)
        country = match.get("country")
        return GeocodeResult(
            name=name,
            latitude=latitude,
            longitude=longitude,
            country=country if isinstance(country, str) and country else None,
        )

    async def current_weather(self, lat: float, lon: float) -> ProviderCall:
        return await self._request(CURRENT_WEATHER_PATH, {"lat": lat, "lon": lon})

    async def hourly_forecast(self, lat: float, lon: float) -> ProviderCall:
        params = {"lat": lat, "lon": lon, "exclude": "current,minutely,daily,alerts"}
        return await self._request(ONECALL_PATH, params)

    async def time_machine(self, lat: float, lon: float, dt: int) -> ProviderCall:
        return await self._request(TIME_MACHINE_PATH, {"lat": lat, "lon": lon, "dt": dt})


def parse_current_weather(call: ProviderCall) -> CurrentConditions:
    _require_ok(call, "Current weather")
    payload = call.body
    if not isinstance(payload, dict):
        raise UpstreamError("Current weather response is not an object", url=call.url)
    temperature_k = _safe_value(payload, "main", "temp")
    if temperature_k is None:
        raise UpstreamError("Current weather response is missing main.temp", url=call.url)

    description: str | None = None
    conditions = payload.get("weather")
    if isinstance(conditions, list) and conditions and isinstance(conditions[0], dict):
        raw_description = conditions[0].get("description")
        description = raw_description if isinstance(raw_description, str) else None

    offset = _safe_value(payload, "timezone")
    city = payload.get("name")
    return CurrentConditions(
        city=city if isinstance(city, str) and city else None,
        temperature_c=int(kelvin_to_celsius(temperature_k)),
        humidity_pct=_safe_value(payload, "main", "humidity"),
        pressure_hpa=_safe_value(payload, "main", "pressure"),
        wind_speed_m_s=_safe_value(payload, "wind", "speed"),
        wind_deg=_safe_value(payload, "wind", "deg"),
        clouds_pct=_safe_value(payload, "clouds", "all"),
        description=description,
        timezone_offset=int(offset) if offset is not None else 0,
        raw=payload,
    )


def parse_hourly_forecast(call: ProviderCall, hours: int = FORECAST_HOURS) -> list[ForecastHour]:
    """Return the next ``hours`` hourly points, skipping the current hour."""
    _require_ok(call, "Hourly forecast")
    payload = call.body
    hourly = payload.get("hourly") if isinstance(payload, dict) else None
    if not isinstance(hourly, list) or len(hourly) < hours + 1:
        raise UpstreamError(f"Hourly forecast must contain at least {hours + 1} entries", url=call.url)

    points: list[ForecastHour] = []
    for entry in hourly[1 : hours + 1]:
        if not isinstance(entry, dict):
            raise UpstreamError("Hourly forecast entry is malformed", url=call.url)
        dt = _safe_value(entry, "dt")
        temperature_k = _safe_value(entry, "temp")
        if dt is None or temperature_k is None:
            raise UpstreamError("Hourly forecast entry is missing dt or temp", url=call.url)
        points.append(
            ForecastHour(
                forecast_time=datetime.fromtimestamp(dt, tz=timezone.utc),
                temperature_c=float(kelvin_to_celsius(temperature_k, 2)),
                humidity_pct=_safe_value(entry, "humidity"),
                pressure_hpa=_safe_value(entry, "pressure"),
                wind_speed_m_s=_safe_value(entry, "wind_speed"),
                wind_deg=_safe_value(entry, "wind_deg"),
                clouds_pct=_safe_value(entry, "clouds"),
            )
        )
    return points


def parse_time_machine(call: ProviderCall) -> HistoricalHour | None:
    """Extract ``data[0]`` from a time-machine response, or None when absent."""
    if not call.ok or not isinstance(call.body, dict):
        return None
    data = call.body.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    entry = data[0]
    dt = _safe_value(entry, "dt")
    if dt is None:
        return None
    temperature_k = _safe_value(entry, "temp")
    offset = _safe_value(call.body, "timezone_offset")
    return HistoricalHour(
        timestamp=datetime.fromtimestamp(dt, tz=timezone.utc),
        timezone_offset=int(offset) if offset is not None else 0,
        temperature_c=float(kelvin_to_celsius(temperature_k, 2)) if temperature_k is not None else None,
        humidity_pct=_safe_value(entry, "humidity"),
        pressure_hpa=_safe_value(entry, "pressure"),
        wind_speed_m_s=_safe_value(entry, "wind_speed"),
        wind_deg=_safe_value(entry, "wind_deg"),
        clouds_pct=_safe_value(entry, "clouds"),
    )


def _require_ok(call: ProviderCall, label: str) -> None:
    if not call.ok:
        raise UpstreamError(
            f"{label} request failed with status {call.status_code}",
            status_code=call.status_code,
            url=call.url,
        )


def _safe_value(container: Any, *path: str) -> Optional[float]:
    data: Any = container
    for key in path:
        if not isinstance(data, dict) or key not in data:
            return None
        data = data[key]
    if data is None or isinstance(data, bool):
        return None
    try:
        return float(data)
    except (TypeError, ValueError):
        return None


openweather_client = OpenWeatherClient()
