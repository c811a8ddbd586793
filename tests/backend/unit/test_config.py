import logging

from encountersync.backend.config import configure_logging, load_settings

_ENV_KEYS = [
    "ENCOUNTERSYNC_DATABASE_URL",
    "ENCOUNTERSYNC_DATA_DIR",
    "ENCOUNTERSYNC_HOST",
    "ENCOUNTERSYNC_PORT",
    "ENCOUNTERSYNC_LOG_LEVEL",
    "ENCOUNTERSYNC_DICE_SEED",
]


def test_load_settings_reads_expected_env(monkeypatch) -> None:
    monkeypatch.setenv("ENCOUNTERSYNC_DATABASE_URL", "postgresql://local")
    monkeypatch.setenv("ENCOUNTERSYNC_DATA_DIR", "/tmp/characters")
    monkeypatch.setenv("ENCOUNTERSYNC_HOST", "localhost")
    monkeypatch.setenv("ENCOUNTERSYNC_PORT", "9000")
    monkeypatch.setenv("ENCOUNTERSYNC_LOG_LEVEL", "debug")
    monkeypatch.setenv("ENCOUNTERSYNC_DICE_SEED", "7")

    settings = load_settings()

    assert settings.database_url == "postgresql://local"
    assert settings.data_dir == "/tmp/characters"
    assert settings.host == "localhost"
    assert settings.port == 9000
    assert settings.log_level == "DEBUG"
    assert settings.dice_seed == 7


def test_load_settings_applies_defaults(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)

    settings = load_settings()

    assert settings.database_url is None
    assert settings.data_dir is None
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    assert settings.log_level == "INFO"
    assert settings.dice_seed is None


def test_configure_logging_accepts_unknown_level(monkeypatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("NOT_A_LEVEL")
    configure_logging("WARNING")

    assert calls[0]["level"] == logging.INFO
    assert calls[1]["level"] == logging.WARNING
