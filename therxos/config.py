"""Runtime settings for TheRxOS.

Everything is read from environment variables. A ``.env`` file is loaded first
(without overriding variables that are already set) so local development can
keep secrets out of the shell profile.

Environment variables:
  THERXOS_DB_PATH               -> sqlite file (default: therxos.db in this package)
  THERXOS_JWT_SECRET            -> signing secret for access tokens
  THERXOS_JWT_ALGORITHM         -> defaults to HS256
  THERXOS_TOKEN_EXPIRE_MINUTES  -> access token lifetime (720)
  THERXOS_SCAN_MIN_MARGIN       -> smallest per-fill gain worth an opportunity (10)
  THERXOS_DME_MIN_MARGIN        -> same, for DME / supply triggers (3)
  THERXOS_SCAN_LOOKBACK_DAYS    -> claims window for opportunity scans (365)
  THERXOS_NIGHTLY_SCAN_HOUR     -> local hour for the nightly scan (2)
  THERXOS_NIGHTLY_SCAN_ENABLED  -> start the nightly scan schedule with the API (true)
  THERXOS_CORS_ORIGINS          -> comma separated origins (*)
  THERXOS_LOG_LEVEL             -> logging level name (INFO)
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

_BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DB_PATH = str(_BASE_DIR / "therxos.db")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def load_env_file(filename: Optional[str] = None, start: Optional[str] = None) -> Optional[str]:
    """Load KEY=VALUE lines from the nearest .env file (cwd and up to 3 parents).

    Returns the path that was loaded, or None.
    """
    filename = filename or os.environ.get("ENV_FILE", ".env")
    cwd = start or os.getcwd()
    for _ in range(4):
        path = os.path.join(cwd, filename)
        if os.path.isfile(path):
            with open(path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip('"').strip("'")
                    if not os.environ.get(key):
                        os.environ[key] = value
            return path
        parent = os.path.dirname(cwd)
        if parent == cwd:
            break
        cwd = parent
    return None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_PATH
    jwt_secret: str = "therxos-dev-secret"
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = 720
    scan_min_margin: float = 10.0
    dme_min_margin: float = 3.0
    scan_lookback_days: int = 365
    nightly_scan_hour: int = 2
    nightly_scan_enabled: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_env_file()
        hour = _env_int("THERXOS_NIGHTLY_SCAN_HOUR", 2)
        if not 0 <= hour <= 23:
            raise ValueError(f"THERXOS_NIGHTLY_SCAN_HOUR must be 0-23, got {hour}")
        origins = os.environ.get("THERXOS_CORS_ORIGINS", "*")
        return cls(
            db_path=os.environ.get("THERXOS_DB_PATH") or DEFAULT_DB_PATH,
            jwt_secret=os.environ.get("THERXOS_JWT_SECRET") or cls.jwt_secret,
            jwt_algorithm=os.environ.get("THERXOS_JWT_ALGORITHM") or cls.jwt_algorithm,
            token_expire_minutes=_env_int("THERXOS_TOKEN_EXPIRE_MINUTES", 720),
            scan_min_margin=_env_float("THERXOS_SCAN_MIN_MARGIN", 10.0),
            dme_min_margin=_env_float("THERXOS_DME_MIN_MARGIN", 3.0),
            scan_lookback_days=_env_int("THERXOS_SCAN_LOOKBACK_DAYS", 365),
            nightly_scan_hour=hour,
            nightly_scan_enabled=_env_bool("THERXOS_NIGHTLY_SCAN_ENABLED", True),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            log_level=(os.environ.get("THERXOS_LOG_LEVEL") or "INFO").upper(),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=level or get_settings().log_level, format=LOG_FORMAT)
