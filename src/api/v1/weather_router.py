from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from auth import Identity
from services.errors import CityNotFoundError
from services.openweather import ForecastHour
from services.weather_ingest import BackfillPoint, WeatherReport, weather_ingest_service
from services.weather_store import ObservationRecord, format_timestamp

from .dependencies import enforce_weather_rate_limit

logger = logging.getLogger("cityweather.api.weather")

router = APIRouter(prefix="/weather", tags=["weather"])

CITY_NOT_FOUND = "city not found"
SERVER_ERROR = "server error"


class HistoryPointModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    time: str = Field(description="Observation receipt time (ISO-8601 UTC)")
    temp: float | None = Field(default=None, description="Temperature in whole degC")
    humidity: float | None = None
    wind: float | None = Field(default=None, description="Wind speed in m/s")
    wind_dir: float | None = Field(default=None, alias="windDir", description="Wind direction in degrees")
    pressure: float | None = Field(default=None, description="Pressure in hPa")
    clouds: float | None = Field(default=None, description="Cloud cover %")
    description: str | None = None


class ForecastPointModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    time: str = Field(description="Forecast hour (ISO-8601 UTC)")
    temp: float = Field(description="Temperature in degC, two decimals")
    humidity: float | None = None
    pressure: float | None = None
    wind: float | None = None
    wind_dir: float | None = Field(default=None, alias="windDir")
    clouds: float | None = None


class BackfillPointModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    time: str = Field(description="Local clock time at the location")
    temp: float | None = None
    humidity: float | None = None
    wind: float | None = None
    wind_dir: float | None = Field(default=None, alias="windDir")
    pressure: float | None = None
    clouds: float | None = None


class WeatherResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    city: str
    temp: int = Field(description="Current temperature in whole degC")
    humidity: float | None = None
    wind: float | None = None
    wind_dir: float | None = Field(default=None, alias="windDir")
    pressure: float | None = None
    clouds: float | None = None
    time: str = Field(description="Current local time at the location")
    icon: str
    history: list[HistoryPointModel] = Field(default_factory=list)
    forecast: list[ForecastPointModel] = Field(default_factory=list)
    commentary: str
    timezone: int = Field(description="Offset from UTC in seconds")


@router.post("", response_model=WeatherResponse)
async def get_weather(
    payload: Any = Body(default=None, examples=[{"location": "Bydgoszcz"}]),
    current_user: Identity = Depends(enforce_weather_rate_limit),
) -> WeatherResponse:
    location = _requested_location(payload)
    try:
        report = await weather_ingest_service.ingest(current_user, location)
    except CityNotFoundError as exc:
        logger.info("%s", exc)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CITY_NOT_FOUND) from exc
    except Exception as exc:
        logger.exception("Weather ingestion failed for user %s", current_user.id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=SERVER_ERROR) from exc
    return _to_weather_response(report)


@router.post("/history", response_model=list[BackfillPointModel])
async def backfill_history(
    payload: Any = Body(default=None, examples=[{"location": "Bydgoszcz"}]),
    current_user: Identity = Depends(enforce_weather_rate_limit),
) -> list[BackfillPointModel]:
    location = _requested_location(payload)
    try:
        points = await weather_ingest_service.backfill(current_user, location)
    except CityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CITY_NOT_FOUND) from exc
    except Exception as exc:
        logger.exception("History backfill failed for user %s", current_user.id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=SERVER_ERROR) from exc
    return [_to_backfill_model(point) for point in points]


def _requested_location(payload: Any) -> Any:
    # Bodies that are not a JSON object fall back to the default city.
    if isinstance(payload, dict):
        return payload.get("location")
    return None


def _to_weather_response(report: WeatherReport) -> WeatherResponse:
    conditions = report.conditions
    return WeatherResponse(
        city=report.city,
        temp=conditions.temperature_c,
        humidity=conditions.humidity_pct,
        wind=conditions.wind_speed_m_s,
        wind_dir=conditions.wind_deg,
        pressure=conditions.pressure_hpa,
        clouds=conditions.clouds_pct,
        time=report.local_time,
        icon=report.icon,
        history=[_to_history_model(row) for row in report.history],
        forecast=[_to_forecast_model(point) for point in report.forecast],
        commentary=report.commentary.text,
        timezone=conditions.timezone_offset,
    )


def _to_history_model(row: ObservationRecord) -> HistoryPointModel:
    return HistoryPointModel.model_validate(row.as_payload())


def _to_forecast_model(point: ForecastHour) -> ForecastPointModel:
    return ForecastPointModel(
        time=format_timestamp(point.forecast_time),
        temp=point.temperature_c,
        humidity=point.humidity_pct,
        pressure=point.pressure_hpa,
        wind=point.wind_speed_m_s,
        wind_dir=point.wind_deg,
        clouds=point.clouds_pct,
    )


def _to_backfill_model(point: BackfillPoint) -> BackfillPointModel:
    return BackfillPointModel(
        time=point.time,
        temp=point.temp,
        humidity=point.humidity,
        wind=point.wind,
        wind_dir=point.wind_dir,
        pressure=point.pressure,
        clouds=point.clouds,
    )


__all__ = ["router"]
