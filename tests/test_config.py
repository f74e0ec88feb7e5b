from config import Settings


def test_settings_defaults():
    settings = Settings()
    assert settings.app_name == "CityWeather API"
    assert settings.app_version == "0.1.0"
    assert settings.default_location == "Bydgoszcz"
    assert settings.request_log_retention_days == 30
    assert settings.forecast_model_name == "openweathermap"
    assert settings.auth_jwt_algorithm == "HS256"


def test_settings_normalizes_cors_from_string():
    settings = Settings(cors_origins="http://example.com, http://localhost")
    assert settings.cors_origins == ["http://example.com", "http://localhost"]
    assert Settings(cors_origins="*").cors_origins == ["*"]


def test_settings_blank_keys_become_none():
    settings = Settings(llm_api_key="  ", rate_limit_exempt_username="")
    assert settings.llm_api_key is None
    assert settings.rate_limit_exempt_username is None


def test_settings_handles_case_insensitive_env(monkeypatch):
    monkeypatch.setenv("default_location", "Torun")
    monkeypatch.setenv("Llm_Model", "local-model")
    settings = Settings()
    assert settings.default_location == "Torun"
    assert settings.llm_model == "local-model"
