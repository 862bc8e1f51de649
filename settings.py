# settings.py: environment configuration (.env supported via python-dotenv)
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from errors import ConfigurationError

BACKENDS = ("file", "http", "memory")
TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}


@dataclass
class Settings:
    port: int = 3000
    snapshot_backend: str = "file"
    snapshot_path: str = "data/database.json"
    snapshot_url: str = ""
    snapshot_token: str = ""
    flush_interval: float = 10.0
    write_through: bool = True
    shutdown_flush_timeout: float = 5.0
    http_timeout: float = 10.0
    upload_dir: str = "uploads"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Reads settings from the environment. Passing `environ` skips .env loading,
        which keeps tests independent of the developer's machine.
        Raises ConfigurationError for anything that would leave the server half-working.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        backend = environ.get("SNAPSHOT_BACKEND", cls.snapshot_backend).strip().lower()
        if backend not in BACKENDS:
            raise ConfigurationError(
                f"SNAPSHOT_BACKEND must be one of {', '.join(BACKENDS)}, got '{backend}'"
            )

        settings = cls(
            port=_int(environ, "PORT", cls.port),
            snapshot_backend=backend,
            snapshot_path=environ.get("SNAPSHOT_PATH", cls.snapshot_path),
            snapshot_url=environ.get("SNAPSHOT_URL", "").strip(),
            snapshot_token=environ.get("SNAPSHOT_TOKEN", ""),
            flush_interval=_float(environ, "FLUSH_INTERVAL", cls.flush_interval),
            write_through=_bool(environ, "WRITE_THROUGH", cls.write_through),
            shutdown_flush_timeout=_float(environ, "SHUTDOWN_FLUSH_TIMEOUT", cls.shutdown_flush_timeout),
            http_timeout=_float(environ, "HTTP_TIMEOUT", cls.http_timeout),
            upload_dir=environ.get("UPLOAD_DIR", cls.upload_dir),
            log_level=environ.get("LOG_LEVEL", cls.log_level).upper(),
        )

        if settings.snapshot_backend == "http" and not settings.snapshot_url:
            raise ConfigurationError("SNAPSHOT_BACKEND=http requires SNAPSHOT_URL")
        if settings.flush_interval <= 0:
            raise ConfigurationError("FLUSH_INTERVAL must be positive")
        return settings


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")


def _bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in TRUTHY:
        return True
    if value in FALSY:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got '{raw}'")
