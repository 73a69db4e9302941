from vibecheck_orchestrator.config.settings import Settings


def test_settings_defaults_match_gateway_and_sandbox_limits() -> None:
    settings = Settings()

    assert settings.gateway_concurrency == 8
    assert settings.gateway_timeout_s == 60.0
    assert settings.gateway_max_attempts == 3
    assert settings.sandbox_timeout_s == 3.0
    assert settings.refinement_max_iterations == 3


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("VIBECHECK_BATCH_SIZE", "4")
    monkeypatch.setenv("VIBECHECK_USE_SUPERCHARGE", "false")

    settings = Settings()

    assert settings.batch_size == 4
    assert settings.use_supercharge is False


def test_api_key_falls_back_to_unprefixed_variables(monkeypatch) -> None:
    monkeypatch.delenv("VIBECHECK_GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("API_KEY", "from-api-key")

    assert Settings(gemini_api_key="").resolved_gemini_api_key() == "from-api-key"

    monkeypatch.setenv("GEMINI_API_KEY", "from-gemini")
    assert Settings(gemini_api_key="").resolved_gemini_api_key() == "from-gemini"
    assert Settings(gemini_api_key="explicit").resolved_gemini_api_key() == "explicit"
