import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from config import settings
from services.openweather import ForecastHour

logger = logging.getLogger("cityweather.api.commentary")

SYSTEM_PROMPT = "You are a friendly weather presenter. Answer in plain prose, at most four sentences."


@dataclass(slots=True, frozen=True)
class CommentaryResult:
    """Either generated text or the fallback plus the reason it was used."""

    text: str
    degraded: bool = False
    reason: str | None = None

    @classmethod
    def ok(cls, text: str) -> "CommentaryResult":
        return cls(text=text)

    @classmethod
    def fallback(cls, reason: str) -> "CommentaryResult":
        return cls(text=settings.commentary_fallback, degraded=True, reason=reason)


def build_prompt(city: str, forecast: Sequence[ForecastHour]) -> str:
    series = [
        {
            "time": point.forecast_time.strftime("%Y-%m-%dT%H:%MZ"),
            "temp_c": point.temperature_c,
            "humidity_pct": point.humidity_pct,
            "wind_m_s": point.wind_speed_m_s,
            "clouds_pct": point.clouds_pct,
        }
        for point in forecast
    ]
    return (
        f"Here is the hourly forecast for the next 24 hours in {city} (UTC times, Celsius):\n"
        f"{json.dumps(series, separators=(',', ':'))}\n"
        "Describe how the weather will develop and suggest what to wear."
    )


class CommentaryService:
    def __init__(self) -> None:
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.llm_request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate(self, city: str, forecast: Sequence[ForecastHour]) -> CommentaryResult:
        """Ask the language model to narrate the forecast. Never raises."""
        if not settings.llm_api_key:
            return CommentaryResult.fallback("language model is not configured")

        payload: dict[str, Any] = {
            "model": settings.llm_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(city, forecast)},
            ],
            "max_tokens": settings.llm_max_tokens,
            "temperature": settings.llm_temperature,
        }
        url = f"{settings.llm_base_url.rstrip('/')}/chat/completions"
        try:
            client = await self._get_client()
            response = await client.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.llm_api_key}"},
            )
            if not response.is_success:
                logger.warning("Commentary request returned %s: %s", response.status_code, response.text[:512])
                return CommentaryResult.fallback(f"status {response.status_code}")
            text = _extract_text(response.json())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Commentary request failed", exc_info=True)
            return CommentaryResult.fallback(type(exc).__name__)

        if not text:
            return CommentaryResult.fallback("empty completion")
        return CommentaryResult.ok(text)


def _extract_text(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, str):
        return None
    return content.strip() or None


commentary_service = CommentaryService()
