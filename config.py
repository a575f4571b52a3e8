"""Application settings read from the environment and an optional .env file."""

import os
import re
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Optional

from dotenv import find_dotenv, load_dotenv

DEFAULT_TOKEN_LIFETIME = "1d"

_DURATION = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_UNITS = {"": "seconds", "s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""


@dataclass
class Settings:
    storage_dir: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    token_lifetime: timedelta = timedelta(days=1)
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    environment: str = "development"
    allow_admin_registration: bool = False

    @property
    def debug(self) -> bool:
        return self.environment == "development"

    def masked(self) -> "Settings":
        """Copy with the signing secret hidden, safe to log."""
        return replace(self, jwt_secret=mask(self.jwt_secret))


def mask(value: Optional[str], prefix: int = 2) -> str:
    if not value or len(value) <= prefix * 2:
        return "****"
    return f"{value[:prefix]}...{value[-prefix:]}"


def parse_duration(value: str) -> timedelta:
    """Parse ``3600``, ``30m``, ``12h`` or ``7d`` into a timedelta."""
    match = _DURATION.match(value or "")
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    duration = timedelta(**{_UNITS[unit]: int(amount)})
    if not duration:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return duration


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the environment, failing fast on bad values."""
    if env_file:
        load_dotenv(env_file, override=True)
    else:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path)

    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise ConfigError("JWT_SECRET is required. Set it before starting the server.")

    port = os.getenv("PORT", "3000")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"PORT must be an integer, got {port!r}") from None

    return Settings(
        storage_dir=os.getenv("STORAGE_DIR", "data"),
        jwt_secret=secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        token_lifetime=parse_duration(os.getenv("JWT_EXPIRES_IN", DEFAULT_TOKEN_LIFETIME)),
        host=os.getenv("HOST", "0.0.0.0"),
        port=port_number,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        environment=os.getenv("APP_ENV", "development"),
        allow_admin_registration=os.getenv("ALLOW_ADMIN_REGISTRATION", "false").lower()
        in ("1", "true", "yes"),
    )
