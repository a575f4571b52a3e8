from datetime import timedelta

import pytest

from config import ConfigError, load_settings, parse_duration


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("JWT_SECRET", "JWT_EXPIRES_IN", "JWT_ALGORITHM", "STORAGE_DIR", "PORT", "HOST", "APP_ENV",
                 "ALLOW_ADMIN_REGISTRATION"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_missing_secret_fails_fast(clean_env):
    with pytest.raises(ConfigError, match="JWT_SECRET"):
        load_settings()


def test_defaults(clean_env):
    clean_env.setenv("JWT_SECRET", "a-secret-value")
    settings = load_settings()
    assert settings.storage_dir == "data"
    assert settings.port == 3000
    assert settings.token_lifetime == timedelta(days=1)
    assert settings.debug
    assert not settings.allow_admin_registration


def test_env_file_is_loaded(clean_env, tmp_path):
    env_file = tmp_path / "custom.env"
    env_file.write_text("JWT_SECRET=from-file-secret\nPORT=8080\nJWT_EXPIRES_IN=2h\n")
    # registered with monkeypatch so the values loaded from the file are undone
    for name in ("JWT_SECRET", "PORT", "JWT_EXPIRES_IN"):
        clean_env.setenv(name, "placeholder")
    settings = load_settings(str(env_file))
    assert settings.jwt_secret == "from-file-secret"
    assert settings.port == 8080
    assert settings.token_lifetime == timedelta(hours=2)


def test_bad_port(clean_env):
    clean_env.setenv("JWT_SECRET", "a-secret-value")
    clean_env.setenv("PORT", "eighty")
    with pytest.raises(ConfigError, match="PORT"):
        load_settings()


@pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("no", False)])
def test_admin_registration_flag(clean_env, value, expected):
    clean_env.setenv("JWT_SECRET", "a-secret-value")
    clean_env.setenv("ALLOW_ADMIN_REGISTRATION", value)
    assert load_settings().allow_admin_registration is expected


def test_masked_hides_secret(clean_env):
    clean_env.setenv("JWT_SECRET", "super-secret-value")
    masked = load_settings().masked()
    assert "super-secret-value" not in repr(masked)
    assert masked.storage_dir == "data"


@pytest.mark.parametrize("value,expected", [
    ("3600", timedelta(seconds=3600)),
    ("45s", timedelta(seconds=45)),
    ("30m", timedelta(minutes=30)),
    ("12h", timedelta(hours=12)),
    ("7d", timedelta(days=7)),
])
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "soon", "1w", "-5m", "0"])
def test_parse_duration_rejects(value):
    with pytest.raises(ConfigError):
        parse_duration(value)
