from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from config import settings
from services.openweather import CurrentConditions, ForecastHour, ProviderCall

logger = logging.getLogger("cityweather.api.store")

COORDINATE_TOLERANCE = 0.0001


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(timestamp: datetime) -> str:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    iso = timestamp.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    if iso.endswith("+00:00"):
        return iso[:-6] + "Z"
    return iso


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _dump_json(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass(slots=True)
class LocationRecord:
    id: int
    name: str
    latitude: float
    longitude: float
    country: Optional[str]


@dataclass(slots=True)
class ObservationRecord:
    location_id: int
    observation_time: datetime
    temperature: Optional[float]
    clouds: Optional[float]
    humidity: Optional[float]
    pressure: Optional[float]
    wind_speed: Optional[float]
    wind_direction: Optional[float]
    description: Optional[str]

    def as_payload(self) -> Dict[str, Any]:
        return {
            "time": format_timestamp(self.observation_time),
            "temp": self.temperature,
            "humidity": self.humidity,
            "wind": self.wind_speed,
            "windDir": self.wind_direction,
            "pressure": self.pressure,
            "clouds": self.clouds,
            "description": self.description,
        }


@dataclass(slots=True)
class ApiRequestRecord:
    user_id: Optional[str]
    location_id: Optional[int]
    request_time: str
    endpoint: str
    parameters: Dict[str, Any]
    response_status: Optional[int]
    response_data: Any


@dataclass(slots=True)
class ForecastRecord:
    location_id: int
    forecast_time: datetime
    predicted_temperature: Optional[float]
    predicted_humidity: Optional[float]
    predicted_pressure: Optional[float]
    predicted_wind_speed: Optional[float]
    predicted_wind_direction: Optional[float]
    predicted_clouds: Optional[float]
    generation_method: str
    model_used: Optional[str]


class WeatherStore:
    """SQLite persistence for locations, observations, forecasts and the request log."""

    def __init__(self, *, db_path: Path, request_log_retention_days: float = 0) -> None:
        self._db_path = db_path
        self._request_log_retention = max(request_log_retention_days, 0)
        self._lock = asyncio.Lock()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS locations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    country TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS api_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    location_id INTEGER REFERENCES locations(id) ON DELETE CASCADE,
                    request_time TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    parameters TEXT NOT NULL,
                    response_status INTEGER,
                    response_data TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_api_requests_time ON api_requests(request_time);

                CREATE TABLE IF NOT EXISTS weather_observations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    location_id INTEGER NOT NULL REFERENCES locations(id) ON DELETE CASCADE,
                    observation_time TEXT NOT NULL,
                    temperature INTEGER,
                    clouds REAL,
                    humidity REAL,
                    pressure REAL,
                    wind_speed REAL,
                    wind_direction REAL,
                    weather_description TEXT,
                    raw_data TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_observations_location_time
                    ON weather_observations(location_id, observation_time);

                CREATE TABLE IF NOT EXISTS weather_forecasts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    location_id INTEGER NOT NULL REFERENCES locations(id) ON DELETE CASCADE,
                    forecast_time TEXT NOT NULL,
                    predicted_temperature REAL,
                    predicted_humidity REAL,
                    predicted_pressure REAL,
                    predicted_wind_speed REAL,
                    predicted_wind_direction REAL,
                    predicted_clouds REAL,
                    generation_method TEXT NOT NULL,
                    model_used TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_forecasts_location_time
                    ON weather_forecasts(location_id, forecast_time);
                """
            )

    # Locations

    async def upsert_location(
        self,
        name: str,
        latitude: float,
        longitude: float,
        country: Optional[str],
    ) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._upsert_location, name, latitude, longitude, country)

    def _upsert_location(self, name: str, latitude: float, longitude: float, country: Optional[str]) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO locations (name, latitude, longitude, country, created_at)
                VALUES (:name, :latitude, :longitude, :country, :created_at)
                ON CONFLICT(name) DO UPDATE SET
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    country = excluded.country
                WHERE abs(locations.latitude - excluded.latitude) > :tolerance
                   OR abs(locations.longitude - excluded.longitude) > :tolerance
                   OR locations.country IS NOT excluded.country;
                """,
                {
                    "name": name,
                    "latitude": latitude,
                    "longitude": longitude,
                    "country": country,
                    "created_at": format_timestamp(_utc_now()),
                    "tolerance": COORDINATE_TOLERANCE,
                },
            )
            if cursor.rowcount:
                logger.debug("Location %s inserted or refreshed", name)
            row = conn.execute("SELECT id FROM locations WHERE name = ?", (name,)).fetchone()
        return int(row["id"])

    async def get_location(self, name: str) -> Optional[LocationRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._select_location, name)

    def _select_location(self, name: str) -> Optional[LocationRecord]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id, name, latitude, longitude, country FROM locations WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return None
        return LocationRecord(
            id=row["id"],
            name=row["name"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            country=row["country"],
        )

    async def count_locations(self) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._count, "locations")

    # Request log

    async def log_request(self, *, user_id: Optional[str], location_id: Optional[int], call: ProviderCall) -> None:
        async with self._lock:
            await asyncio.to_thread(self._insert_request, user_id, location_id, call)

    def _insert_request(self, user_id: Optional[str], location_id: Optional[int], call: ProviderCall) -> None:
        now = _utc_now()
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO api_requests
                    (user_id, location_id, request_time, endpoint, parameters, response_status, response_data)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    user_id,
                    location_id,
                    format_timestamp(now),
                    call.url,
                    _dump_json(call.params),
                    call.status_code,
                    _dump_json(call.body),
                ),
            )
            if self._request_log_retention > 0:
                cutoff = format_timestamp(now - timedelta(days=self._request_log_retention))
                conn.execute("DELETE FROM api_requests WHERE request_time < ?", (cutoff,))

    async def list_requests(self, *, user_id: Optional[str] = None) -> List[ApiRequestRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._select_requests, user_id)

    def _select_requests(self, user_id: Optional[str]) -> List[ApiRequestRecord]:
        query = (
            "SELECT user_id, location_id, request_time, endpoint, parameters, response_status, response_data "
            "FROM api_requests"
        )
        params: tuple[Any, ...] = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY id ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        results: List[ApiRequestRecord] = []
        for row in rows:
            results.append(
                ApiRequestRecord(
                    user_id=row["user_id"],
                    location_id=row["location_id"],
                    request_time=row["request_time"],
                    endpoint=row["endpoint"],
                    parameters=json.loads(row["parameters"]),
                    response_status=row["response_status"],
                    response_data=_load_json(row["response_data"]),
                )
            )
        return results

    # Observations

    async def record_observation(
        self,
        location_id: int,
        conditions: CurrentConditions,
        *,
        observed_at: Optional[datetime] = None,
    ) -> datetime:
        """Persist one observation stamped with the server receipt time."""
        timestamp = observed_at or _utc_now()
        async with self._lock:
            await asyncio.to_thread(self._insert_observation, location_id, conditions, timestamp)
        return timestamp

    def _insert_observation(self, location_id: int, conditions: CurrentConditions, timestamp: datetime) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO weather_observations
                    (location_id, observation_time, temperature, clouds, humidity, pressure,
                     wind_speed, wind_direction, weather_description, raw_data)
                VALUES
                    (:location_id, :observation_time, :temperature, :clouds, :humidity, :pressure,
                     :wind_speed, :wind_direction, :description, :raw_data);
                """,
                {
                    "location_id": location_id,
                    "observation_time": format_timestamp(timestamp),
                    "temperature": conditions.temperature_c,
                    "clouds": conditions.clouds_pct,
                    "humidity": conditions.humidity_pct,
                    "pressure": conditions.pressure_hpa,
                    "wind_speed": conditions.wind_speed_m_s,
                    "wind_direction": conditions.wind_deg,
                    "description": conditions.description,
                    "raw_data": _dump_json(conditions.raw),
                },
            )

    async def read_history(self, location_id: int, since: datetime) -> List[ObservationRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._select_history, location_id, format_timestamp(since))

    def _select_history(self, location_id: int, since_iso: str) -> List[ObservationRecord]:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                SELECT location_id, observation_time, temperature, clouds, humidity, pressure,
                       wind_speed, wind_direction, weather_description
                FROM weather_observations
                WHERE location_id = ? AND observation_time >= ?
                ORDER BY observation_time ASC, id ASC;
                """,
                (location_id, since_iso),
            )
            return [
                ObservationRecord(
                    location_id=row["location_id"],
                    observation_time=_parse_iso(row["observation_time"]),
                    temperature=row["temperature"],
                    clouds=row["clouds"],
                    humidity=row["humidity"],
                    pressure=row["pressure"],
                    wind_speed=row["wind_speed"],
                    wind_direction=row["wind_direction"],
                    description=row["weather_description"],
                )
                for row in cursor
            ]

    # Forecasts

    async def record_forecast(
        self,
        location_id: int,
        points: Sequence[ForecastHour],
        *,
        generation_method: str = "api",
        model_used: Optional[str] = None,
    ) -> int:
        async with self._lock:
            return await asyncio.to_thread(
                self._insert_forecast, location_id, list(points), generation_method, model_used
            )

    def _insert_forecast(
        self,
        location_id: int,
        points: List[ForecastHour],
        generation_method: str,
        model_used: Optional[str],
    ) -> int:
        created_at = format_timestamp(_utc_now())
        rows = [
            {
                "location_id": location_id,
                "forecast_time": format_timestamp(point.forecast_time),
                "temperature": point.temperature_c,
                "humidity": point.humidity_pct,
                "pressure": point.pressure_hpa,
                "wind_speed": point.wind_speed_m_s,
                "wind_direction": point.wind_deg,
                "clouds": point.clouds_pct,
                "generation_method": generation_method,
                "model_used": model_used,
                "created_at": created_at,
            }
            for point in points
        ]
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO weather_forecasts
                    (location_id, forecast_time, predicted_temperature, predicted_humidity, predicted_pressure,
                     predicted_wind_speed, predicted_wind_direction, predicted_clouds, generation_method,
                     model_used, created_at)
                VALUES
                    (:location_id, :forecast_time, :temperature, :humidity, :pressure,
                     :wind_speed, :wind_direction, :clouds, :generation_method,
                     :model_used, :created_at);
                """,
                rows,
            )
        return len(rows)

    async def list_forecasts(self, location_id: int) -> List[ForecastRecord]:
        async with self._lock:
            return await asyncio.to_thread(self._select_forecasts, location_id)

    def _select_forecasts(self, location_id: int) -> List[ForecastRecord]:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                SELECT location_id, forecast_time, predicted_temperature, predicted_humidity, predicted_pressure,
                       predicted_wind_speed, predicted_wind_direction, predicted_clouds, generation_method, model_used
                FROM weather_forecasts
                WHERE location_id = ?
                ORDER BY forecast_time ASC, id ASC;
                """,
                (location_id,),
            )
            return [
                ForecastRecord(
                    location_id=row["location_id"],
                    forecast_time=_parse_iso(row["forecast_time"]),
                    predicted_temperature=row["predicted_temperature"],
                    predicted_humidity=row["predicted_humidity"],
                    predicted_pressure=row["predicted_pressure"],
                    predicted_wind_speed=row["predicted_wind_speed"],
                    predicted_wind_direction=row["predicted_wind_direction"],
                    predicted_clouds=row["predicted_clouds"],
                    generation_method=row["generation_method"],
                    model_used=row["model_used"],
                )
                for row in cursor
            ]

    # Maintenance

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._truncate)

    def _truncate(self) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM weather_forecasts;")
            conn.execute("DELETE FROM weather_observations;")
            conn.execute("DELETE FROM api_requests;")
            conn.execute("DELETE FROM locations;")

    def _count(self, table: str) -> int:
        with self._connection() as conn:
            return int(conn.execute(f"SELECT COUNT(1) FROM {table}").fetchone()[0])


def _load_json(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return value


def _resolve_db_path() -> Path:
    return Path(settings.database_path)


weather_store = WeatherStore(
    db_path=_resolve_db_path(),
    request_log_retention_days=settings.request_log_retention_days,
)
