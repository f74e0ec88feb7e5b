from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

import pytest
from fastapi.testclient import TestClient
from httpx import Response

from config import settings
from services.weather_store import weather_store

GEOCODE_URL = "https://api.openweathermap.org/geo/1.0/direct"
CURRENT_URL = "https://api.openweathermap.org/data/2.5/weather"
ONECALL_URL = "https://api.openweathermap.org/data/3.0/onecall"
TIME_MACHINE_URL = "https://api.openweathermap.org/data/3.0/onecall/timemachine"
LLM_URL = "https://llm.test/v1/chat/completions"


def _geocode_payload(name: str = "Bydgoszcz", lat: float = 53.1235, lon: float = 18.0084) -> list[dict[str, Any]]:
    return [{"name": name, "lat": lat, "lon": lon, "country": "PL", "state": "Kuyavian-Pomeranian Voivodeship"}]


def _current_payload(temp_k: float = 293.4, clouds: int = 55) -> dict[str, Any]:
    return {
        "name": "Bydgoszcz",
        "dt": 1_700_000_000,
        "timezone": 7200,
        "main": {"temp": temp_k, "humidity": 64, "pressure": 1013},
        "wind": {"speed": 4.1, "deg": 250},
        "clouds": {"all": clouds},
        "weather": [{"id": 803, "main": "Clouds", "description": "broken clouds"}],
    }


def _hourly_payload(hours: int = 48) -> dict[str, Any]:
    first = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return {
        "timezone_offset": 7200,
        "hourly": [
            {
                "dt": int((first + timedelta(hours=i)).timestamp()),
                "temp": 290.0 + i * 0.1,
                "humidity": 60,
                "pressure": 1012,
                "wind_speed": 3.5,
                "wind_deg": 180,
                "clouds": 40,
            }
            for i in range(hours)
        ],
    }


def _completion_payload(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


def _stub_upstreams(
    respx_mock,
    *,
    geocode: list[dict[str, Any]] | None = None,
    current_status: int = 200,
    llm_status: int = 200,
) -> Dict[str, Any]:
    routes = {
        "geocode": respx_mock.get(GEOCODE_URL).mock(
            side_effect=lambda request: Response(200, json=geocode if geocode is not None else _geocode_payload())
        ),
        "current": respx_mock.get(CURRENT_URL).mock(
            side_effect=lambda request: Response(
                current_status,
                json=_current_payload() if current_status == 200 else {"cod": current_status, "message": "boom"},
            )
        ),
    }
    if current_status == 200:
        routes["onecall"] = respx_mock.get(ONECALL_URL).mock(
            side_effect=lambda request: Response(200, json=_hourly_payload())
        )
        routes["llm"] = respx_mock.post(LLM_URL).mock(
            side_effect=lambda request: Response(
                llm_status,
                json=_completion_payload("Mild and cloudy, bring a light jacket.")
                if llm_status == 200
                else {"error": {"message": "overloaded"}},
            )
        )
    return routes


def test_weather_endpoint_returns_full_report(client: TestClient, respx_mock) -> None:
    routes = _stub_upstreams(respx_mock)
    before = datetime.now(timezone.utc)

    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})
    after = datetime.now(timezone.utc)

    assert response.status_code == 200
    payload = response.json()
    assert payload["city"] == "Bydgoszcz"
    assert payload["temp"] == round(293.4 - 273.15)
    assert payload["humidity"] == 64
    assert payload["wind"] == pytest.approx(4.1)
    assert payload["windDir"] == 250
    assert payload["pressure"] == 1013
    assert payload["clouds"] == 55
    assert payload["icon"] == "⛅"
    assert payload["timezone"] == 7200
    assert payload["commentary"] == "Mild and cloudy, bring a light jacket."

    assert len(payload["history"]) == 1
    assert payload["history"][0]["temp"] == 20
    assert payload["history"][0]["description"] == "broken clouds"

    forecast = payload["forecast"]
    assert len(forecast) == 24
    assert forecast[0]["temp"] == pytest.approx(290.1 - 273.15, abs=0.01)
    # History and forecast share one timestamp format.
    assert payload["history"][0]["time"].endswith("Z")
    assert len(forecast[0]["time"]) == len(payload["history"][0]["time"]) == len("2024-01-01T00:00:00.000Z")
    assert forecast[0]["time"].endswith(":00:00.000Z")
    for point in forecast:
        when = datetime.fromisoformat(point["time"].replace("Z", "+00:00"))
        assert before < when <= after + timedelta(hours=24)

    sent = routes["geocode"].calls.last.request
    assert sent.url.params["q"] == "Bydgoszcz"
    assert sent.url.params["limit"] == "1"
    assert sent.url.params["appid"] == "test-owm-key"


def test_weather_endpoint_persists_rows_and_audit_log(client: TestClient, respx_mock) -> None:
    _stub_upstreams(respx_mock)

    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})
    assert response.status_code == 200

    location = asyncio.run(weather_store.get_location("Bydgoszcz"))
    assert location is not None
    assert location.country == "PL"

    requests = asyncio.run(weather_store.list_requests(user_id="42"))
    assert [row.response_status for row in requests] == [200, 200]
    assert requests[0].endpoint.startswith(CURRENT_URL)
    assert requests[1].endpoint.startswith(ONECALL_URL)
    assert all("appid" not in row.endpoint for row in requests)
    assert all(row.location_id == location.id for row in requests)
    assert requests[0].response_data["main"]["temp"] == pytest.approx(293.4)

    forecasts = asyncio.run(weather_store.list_forecasts(location.id))
    assert len(forecasts) == 24
    assert {row.generation_method for row in forecasts} == {"api"}
    assert {row.model_used for row in forecasts} == {settings.forecast_model_name}


def test_repeated_requests_reuse_location_and_grow_history(client: TestClient, respx_mock) -> None:
    _stub_upstreams(respx_mock)

    first = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})
    second = client.post("/api/v1/weather", json={"location": "  Bydgoszcz "})

    assert first.status_code == 200
    assert second.status_code == 200
    assert asyncio.run(weather_store.count_locations()) == 1
    history = second.json()["history"]
    assert len(history) == 2
    assert history[0]["time"] <= history[1]["time"]

    location = asyncio.run(weather_store.get_location("Bydgoszcz"))
    assert location is not None
    assert len(asyncio.run(weather_store.list_forecasts(location.id))) == 48


def test_weather_endpoint_uses_default_location_without_body(client: TestClient, respx_mock) -> None:
    routes = _stub_upstreams(respx_mock)

    response = client.post("/api/v1/weather")

    assert response.status_code == 200
    assert routes["geocode"].calls.last.request.url.params["q"] == settings.default_location


@pytest.mark.parametrize("body", [["Bydgoszcz"], "Bydgoszcz", 42, {"city": "Gdansk"}])
def test_non_object_body_falls_back_to_default_location(client: TestClient, respx_mock, body: Any) -> None:
    routes = _stub_upstreams(respx_mock)

    response = client.post("/api/v1/weather", json=body)

    assert response.status_code == 200
    assert routes["geocode"].calls.last.request.url.params["q"] == settings.default_location


def test_malformed_json_is_rejected_without_using_quota(client: TestClient, respx_mock) -> None:
    for _ in range(10):
        rejected = client.post(
            "/api/v1/weather",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert rejected.status_code == 422
        assert rejected.json() == {"error": "invalid request body"}

    _stub_upstreams(respx_mock)
    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})

    assert response.status_code == 200


def test_weather_endpoint_sanitizes_location_before_lookup(client: TestClient, respx_mock) -> None:
    routes = _stub_upstreams(respx_mock)

    response = client.post("/api/v1/weather", json={"location": " <b>Bydgoszcz</b> "})

    assert response.status_code == 200
    assert routes["geocode"].calls.last.request.url.params["q"] == "&lt;b&gt;Bydgoszcz&lt;/b&gt;"


def test_unknown_city_returns_404_without_side_effects(client: TestClient, respx_mock) -> None:
    geocode = respx_mock.get(GEOCODE_URL).mock(side_effect=lambda request: Response(200, json=[]))

    response = client.post("/api/v1/weather", json={"location": "Nonexistentville"})

    assert response.status_code == 404
    assert response.json() == {"error": "city not found"}
    assert geocode.call_count == 1
    assert asyncio.run(weather_store.count_locations()) == 0
    assert asyncio.run(weather_store.list_requests()) == []


def test_commentary_failure_keeps_request_successful(client: TestClient, respx_mock) -> None:
    routes = _stub_upstreams(respx_mock, llm_status=503)

    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["commentary"] == settings.commentary_fallback
    assert len(payload["forecast"]) == 24
    assert len(payload["history"]) == 1
    assert routes["llm"].call_count == 1


def test_current_weather_failure_is_logged_and_returns_500(client: TestClient, respx_mock) -> None:
    _stub_upstreams(respx_mock, current_status=401)

    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})

    assert response.status_code == 500
    assert response.json() == {"error": "server error"}
    # Earlier writes are not rolled back.
    assert asyncio.run(weather_store.count_locations()) == 1
    requests = asyncio.run(weather_store.list_requests())
    assert len(requests) == 1
    assert requests[0].response_status == 401
    assert requests[0].response_data == {"cod": 401, "message": "boom"}


def test_missing_token_is_rejected(client: TestClient) -> None:
    response = client.post("/api/v1/weather", json={"location": "Bydgoszcz"}, headers={"Authorization": ""})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing access token"}


def test_invalid_token_is_forbidden(client: TestClient) -> None:
    response = client.post(
        "/api/v1/weather",
        json={"location": "Bydgoszcz"},
        headers={"Authorization": "Bearer not.a.token"},
    )
    assert response.status_code == 403
    assert "error" in response.json()


def test_eleventh_request_is_rate_limited_before_upstream_calls(client: TestClient, respx_mock) -> None:
    routes = _stub_upstreams(respx_mock)

    for _ in range(10):
        assert client.post("/api/v1/weather", json={"location": "Bydgoszcz"}).status_code == 200

    rejected = client.post("/api/v1/weather", json={"location": "Bydgoszcz"})

    assert rejected.status_code == 429
    assert rejected.json() == {"error": "Too many requests, please try again later."}
    assert int(rejected.headers["Retry-After"]) > 0
    assert routes["geocode"].call_count == 10
    assert len(asyncio.run(weather_store.list_requests())) == 20


def test_rate_limit_is_tracked_per_user(
    client: TestClient,
    respx_mock,
    auth_header: Callable[..., Dict[str, str]],
) -> None:
    _stub_upstreams(respx_mock)

    for _ in range(10):
        client.post("/api/v1/weather", json={"location": "Bydgoszcz"})
    assert client.post("/api/v1/weather", json={"location": "Bydgoszcz"}).status_code == 429

    other = client.post(
        "/api/v1/weather",
        json={"location": "Bydgoszcz"},
        headers=auth_header("7", "bob"),
    )
    assert other.status_code == 200


def test_privileged_user_is_never_rate_limited(
    client: TestClient,
    respx_mock,
    auth_header: Callable[..., Dict[str, str]],
) -> None:
    _stub_upstreams(respx_mock)
    admin = auth_header("1", "admin")

    statuses = [
        client.post("/api/v1/weather", json={"location": "Bydgoszcz"}, headers=admin).status_code
        for _ in range(11)
    ]

    assert statuses == [200] * 11


def test_history_backfill_collects_and_logs_each_hour(client: TestClient, respx_mock) -> None:
    respx_mock.get(GEOCODE_URL).mock(side_effect=lambda request: Response(200, json=_geocode_payload()))

    def _time_machine(request):
        dt = int(request.url.params["dt"])
        return Response(
            200,
            json={
                "timezone_offset": 3600,
                "data": [
                    {
                        "dt": dt,
                        "temp": 280.15,
                        "humidity": 80,
                        "pressure": 1020,
                        "wind_speed": 2.0,
                        "wind_deg": 90,
                        "clouds": 10,
                    }
                ],
            },
        )

    machine = respx_mock.get(TIME_MACHINE_URL).mock(side_effect=_time_machine)

    response = client.post("/api/v1/weather/history", json={"location": "Bydgoszcz"})

    assert response.status_code == 200
    points = response.json()
    assert len(points) == 25
    assert points[0]["temp"] == pytest.approx(7.0)
    assert points[0]["windDir"] == 90
    assert len(points[0]["time"]) == len("HH:MM:SS")
    assert machine.call_count == 25
    stamps = [int(call.request.url.params["dt"]) for call in machine.calls]
    assert stamps == sorted(stamps)
    assert stamps[-1] - stamps[0] == 24 * 3600

    logged = asyncio.run(weather_store.list_requests(user_id="42"))
    assert len(logged) == 25
    assert logged[0].parameters["dt"] == stamps[0]
