import asyncio
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Settings are read at import time, so point them at test values first.
_TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="cityweather-tests-"))
os.environ["DATABASE_PATH"] = str(_TEST_DATA_DIR / "weather.sqlite")
os.environ["OPENWEATHER_API_KEY"] = "test-owm-key"
os.environ["OPENWEATHER_BASE_URL"] = "https://api.openweathermap.org"
os.environ["LLM_API_KEY"] = "test-llm-key"
os.environ["LLM_BASE_URL"] = "https://llm.test/v1"
os.environ["BACKFILL_PACING_SECONDS"] = "0"
os.environ["WEATHER_RATE_LIMIT"] = "10/day"
os.environ["API_RATE_LIMIT"] = "100/15 minutes"
os.environ["RATE_LIMIT_EXEMPT_USERNAME"] = "admin"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from auth import create_access_token  # noqa: E402
from config import settings  # noqa: E402
from main import create_app  # noqa: E402
from services.rate_limit import api_rate_limiter, weather_rate_limiter  # noqa: E402
from services.weather_store import weather_store  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_weather_services() -> None:
    asyncio.run(weather_store.clear())
    weather_rate_limiter.reset()
    api_rate_limiter.reset()
    yield
    asyncio.run(weather_store.clear())
    weather_rate_limiter.reset()
    api_rate_limiter.reset()


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def auth_header() -> Callable[..., Dict[str, str]]:
    def _build(user_id: str = "42", username: str = "alice") -> Dict[str, str]:
        token = create_access_token(user_id, username=username)
        return {"Authorization": f"Bearer {token}"}

    return _build


@pytest.fixture
def client(auth_header: Callable[..., Dict[str, str]]) -> TestClient:
    app = create_app()
    with TestClient(app, headers=auth_header()) as test_client:
        yield test_client
