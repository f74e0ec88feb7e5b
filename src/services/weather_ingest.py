"""Weather ingestion flow behind the /weather routes.

One request runs sequentially: geocode the sanitized place name, upsert the
location, fetch and log current conditions, store the observation, read the
trailing 24 hours of observations, fetch, log and store the hourly forecast,
then ask the language model for commentary. Writes are committed step by
step, so a failure late in the flow leaves the earlier rows in place.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from auth import Identity
from config import settings
from services.commentary import CommentaryResult, CommentaryService, commentary_service
from services.openweather import (
    CurrentConditions,
    ForecastHour,
    GeocodeResult,
    OpenWeatherClient,
    openweather_client,
    parse_current_weather,
    parse_hourly_forecast,
    parse_time_machine,
)
from services.sanitize import sanitize
from services.weather_store import ObservationRecord, WeatherStore, weather_store

logger = logging.getLogger("cityweather.api.ingest")

HISTORY_WINDOW = timedelta(hours=24)
BACKFILL_HOURS = 24
LOCAL_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def icon_for_clouds(clouds_pct: Optional[float]) -> str:
    clouds = clouds_pct or 0.0
    if clouds < 20:
        return "☀"
    if clouds < 80:
        return "⛅"
    return "☁"


def local_time(now: datetime, offset_seconds: int, fmt: str = LOCAL_TIME_FORMAT) -> str:
    return (now.astimezone(timezone.utc) + timedelta(seconds=offset_seconds)).strftime(fmt)


@dataclass(slots=True)
class WeatherReport:
    location_id: int
    city: str
    conditions: CurrentConditions
    observed_at: datetime
    local_time: str
    icon: str
    history: list[ObservationRecord]
    forecast: list[ForecastHour]
    commentary: CommentaryResult


@dataclass(slots=True)
class BackfillPoint:
    time: str
    temp: Optional[float]
    humidity: Optional[float]
    wind: Optional[float]
    wind_dir: Optional[float]
    pressure: Optional[float]
    clouds: Optional[float]


class WeatherIngestService:
    def __init__(
        self,
        *,
        store: WeatherStore,
        provider: OpenWeatherClient,
        commentary: CommentaryService,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._commentary = commentary
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    @property
    def store(self) -> WeatherStore:
        return self._store

    async def _resolve_location(self, raw_location: Any) -> tuple[GeocodeResult, int]:
        query = sanitize(raw_location)
        if not isinstance(query, str) or not query:
            query = sanitize(settings.default_location)
        place = await self._provider.geocode(query)
        location_id = await self._store.upsert_location(place.name, place.latitude, place.longitude, place.country)
        return place, location_id

    async def ingest(self, identity: Identity, raw_location: Any) -> WeatherReport:
        place, location_id = await self._resolve_location(raw_location)

        current_call = await self._provider.current_weather(place.latitude, place.longitude)
        await self._store.log_request(user_id=identity.id, location_id=location_id, call=current_call)
        conditions = parse_current_weather(current_call)

        observed_at = await self._store.record_observation(location_id, conditions, observed_at=self._clock())
        history = await self._store.read_history(location_id, observed_at - HISTORY_WINDOW)

        forecast_call = await self._provider.hourly_forecast(place.latitude, place.longitude)
        await self._store.log_request(user_id=identity.id, location_id=location_id, call=forecast_call)
        forecast = parse_hourly_forecast(forecast_call)
        await self._store.record_forecast(
            location_id,
            forecast,
            generation_method="api",
            model_used=settings.forecast_model_name,
        )

        city = conditions.city or place.name
        commentary = await self._commentary.generate(city, forecast)
        if commentary.degraded:
            logger.info("Commentary degraded for %s: %s", city, commentary.reason)

        logger.info(
            "Ingested weather for %s (location %s) for user %s: %s history rows, %s forecast points",
            city,
            location_id,
            identity.id,
            len(history),
            len(forecast),
        )
        return WeatherReport(
            location_id=location_id,
            city=city,
            conditions=conditions,
            observed_at=observed_at,
            local_time=local_time(self._clock(), conditions.timezone_offset),
            icon=icon_for_clouds(conditions.clouds_pct),
            history=history,
            forecast=forecast,
            commentary=commentary,
        )

    async def backfill(self, identity: Identity, raw_location: Any) -> list[BackfillPoint]:
        """Collect the past 24 hours hour by hour from the time-machine endpoint.

        Calls are spaced by ``backfill_pacing_seconds`` to stay under the
        provider's per-second limit. Every call is logged; none is persisted
        as an observation.
        """
        place, location_id = await self._resolve_location(raw_location)
        now_epoch = int(self._clock().timestamp())
        points: list[BackfillPoint] = []
        offset: int | None = None

        for hours_ago in range(BACKFILL_HOURS, -1, -1):
            dt = now_epoch - hours_ago * 3600
            call = await self._provider.time_machine(place.latitude, place.longitude, dt)
            await self._store.log_request(user_id=identity.id, location_id=location_id, call=call)
            if not call.ok:
                logger.warning(
                    "Time-machine call for %s at dt=%s failed with status %s; skipping hour",
                    place.name,
                    dt,
                    call.status_code,
                )
            sample = parse_time_machine(call)
            if sample is not None:
                if offset is None:
                    offset = sample.timezone_offset
                requested = datetime.fromtimestamp(dt, tz=timezone.utc)
                points.append(
                    BackfillPoint(
                        time=local_time(requested, offset, "%H:%M:%S"),
                        temp=sample.temperature_c,
                        humidity=sample.humidity_pct,
                        wind=sample.wind_speed_m_s,
                        wind_dir=sample.wind_deg,
                        pressure=sample.pressure_hpa,
                        clouds=sample.clouds_pct,
                    )
                )
            if hours_ago and settings.backfill_pacing_seconds > 0:
                await self._sleep(settings.backfill_pacing_seconds)

        logger.info("Backfilled %s of %s hours for %s", len(points), BACKFILL_HOURS + 1, place.name)
        return points


weather_ingest_service = WeatherIngestService(
    store=weather_store,
    provider=openweather_client,
    commentary=commentary_service,
)
