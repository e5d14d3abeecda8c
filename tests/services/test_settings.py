"""Tests for environment-driven settings."""

from vine_award.core.settings import Settings


def test_settings_read_environment_aliases(monkeypatch) -> None:
    monkeypatch.setenv("VINE_COORDINATOR_ID", "bot-9")
    monkeypatch.setenv("VINE_LOCK_MAX_AGE_SECONDS", "60")
    monkeypatch.setenv("AWARD_WORKER_ENABLED", "true")

    settings = Settings()

    assert settings.coordinator_id == "bot-9"
    assert settings.lock_max_age_ms == 60_000
    assert settings.worker_enabled is True


def test_worker_secret_falls_back_to_bot_token() -> None:
    assert Settings(feed_bot_token="tok", worker_secret=None).effective_worker_secret == "tok"
    assert Settings(feed_bot_token="tok", worker_secret="s").effective_worker_secret == "s"
