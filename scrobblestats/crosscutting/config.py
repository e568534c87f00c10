import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from dotenv import dotenv_values

from scrobblestats.domain.entities import DEFAULT_BASE_URL, Handler


class ConfigError(Exception):
    """Configuration error."""
    pass


API_KEY_VAR = 'LAST_FM_API_KEY'
USERNAME_VAR = 'LAST_FM_USERNAME'
BASE_URL_VAR = 'LAST_FM_BASE_URL'
DATA_DIR_VAR = 'SCROBBLESTATS_DATA_DIR'
PAGE_SIZE_VAR = 'SCROBBLESTATS_PAGE_SIZE'
MAX_RETRIES_VAR = 'SCROBBLESTATS_MAX_RETRIES'
TIMEOUT_VAR = 'SCROBBLESTATS_TIMEOUT'

# Required environment variables for the application
REQUIRED_ENV_VARS = [API_KEY_VAR]


def _merged_env(env_file: Optional[Union[str, Path]] = None,
                environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment variables, with values from ``env_file`` filling the gaps."""
    values: Dict[str, str] = {}
    if env_file is not None:
        path = Path(env_file)
        if not path.exists():
            raise ConfigError(f"Environment file not found: {path}")
        values.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    values.update(os.environ if environ is None else environ)
    return values


def get_required_env_var(var_name: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """Get a required environment variable, raising ConfigError if it is unset or blank."""
    env = os.environ if environ is None else environ
    value = env.get(var_name)
    if value is None or not str(value).strip():
        raise ConfigError(f"Missing required environment variable: {var_name}\n"
                          f"Please set it in your environment or .env file")
    return value


def missing_env_vars(environ: Optional[Mapping[str, str]] = None) -> List[str]:
    env = os.environ if environ is None else environ
    return [name for name in REQUIRED_ENV_VARS if not str(env.get(name) or '').strip()]


def validate_env_vars(environ: Optional[Mapping[str, str]] = None) -> None:
    """Validate that all required environment variables are set."""
    missing = missing_env_vars(environ)
    if missing:
        raise ConfigError(f"Missing required environment variable: {', '.join(missing)}\n"
                          f"Please set it in your environment or .env file")


def _int_setting(values: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = values.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_setting(values: Mapping[str, str], name: str, default: float) -> float:
    raw = values.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Application configuration resolved from the environment."""

    api_key: str = field(repr=False)
    username: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    data_dir: str = 'data'
    page_size: int = 200
    max_retries: int = 3
    timeout: float = 15.0

    def handler(self, username: Optional[str] = None) -> Handler:
        """Build the Handler for ``username`` or the configured user."""
        user = username or self.username
        if not user:
            raise ConfigError(f"No username given and {USERNAME_VAR} is not set")
        return Handler(username=user, api_key=self.api_key, base_url=self.base_url)

    def summary(self) -> Dict[str, Any]:
        """Get configuration summary (without sensitive data)."""
        return {
            'has_api_key': bool(self.api_key),
            'username': self.username,
            'base_url': self.base_url,
            'data_dir': self.data_dir,
            'page_size': self.page_size,
            'max_retries': self.max_retries,
            'timeout': self.timeout,
        }


def load_settings(env_file: Optional[Union[str, Path]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve Settings from the environment, optionally reading a .env file first.

    Raises:
        ConfigError: Missing API key or malformed numeric values
    """
    values = _merged_env(env_file, environ)
    validate_env_vars(values)
    return Settings(
        api_key=values[API_KEY_VAR].strip(),
        username=(values.get(USERNAME_VAR) or '').strip() or None,
        base_url=(values.get(BASE_URL_VAR) or '').strip() or DEFAULT_BASE_URL,
        data_dir=(values.get(DATA_DIR_VAR) or '').strip() or 'data',
        page_size=_int_setting(values, PAGE_SIZE_VAR, 200, minimum=1),
        max_retries=_int_setting(values, MAX_RETRIES_VAR, 3),
        timeout=_float_setting(values, TIMEOUT_VAR, 15.0),
    )
