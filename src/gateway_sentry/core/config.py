# Core Module - Runtime Configuration
#
# Settings are read from the process environment, optionally seeded from
# a .env file via python-dotenv.  Numeric values that fail to parse or
# fall below their minimum keep their default and log a warning; a bad
# environment variable never prevents the pipeline from starting.

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./data/threats.db"
DEFAULT_GEO_DIR = "./data/geoip"
DEFAULT_CROWDSEC_BASE_URL = "https://cti.api.crowdsec.net"


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer), using %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning("Ignoring %s=%d (minimum %d), using %d", name, value, minimum, default)
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ThreatSettings:
    """Configuration for the threat analysis pipeline."""

    db_path: str = DEFAULT_DB_PATH
    geo_data_dir: str = DEFAULT_GEO_DIR
    crowdsec_api_key: str = ""
    crowdsec_base_url: str = DEFAULT_CROWDSEC_BASE_URL
    maxmind_license_key: str = ""
    poll_interval_minutes: int = 1
    retention_days: int = 90
    analysis_window_minutes: int = 60
    reputation_enabled: bool = True
    http_timeout_seconds: int = 10

    @property
    def reputation_configured(self) -> bool:
        return self.reputation_enabled and bool(self.crowdsec_api_key)

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Path] = None,
    ) -> "ThreatSettings":
        """Build settings from environment variables.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests).
            dotenv_path: Explicit .env file; when ``env`` is None the
                default .env lookup of python-dotenv is used.
        """
        if env is None:
            load_dotenv(dotenv_path=dotenv_path, override=False)
            env = os.environ

        return cls(
            db_path=env.get("GATEWAY_SENTRY_DB_PATH") or DEFAULT_DB_PATH,
            geo_data_dir=env.get("GATEWAY_SENTRY_GEO_DIR") or DEFAULT_GEO_DIR,
            crowdsec_api_key=env.get("CROWDSEC_API_KEY", ""),
            crowdsec_base_url=env.get("CROWDSEC_BASE_URL") or DEFAULT_CROWDSEC_BASE_URL,
            maxmind_license_key=env.get("MAXMIND_LICENSE_KEY", ""),
            poll_interval_minutes=_env_int(env, "GATEWAY_SENTRY_POLL_MINUTES", 1),
            retention_days=_env_int(env, "GATEWAY_SENTRY_RETENTION_DAYS", 90),
            analysis_window_minutes=_env_int(
                env, "GATEWAY_SENTRY_ANALYSIS_WINDOW_MINUTES", 60
            ),
            reputation_enabled=_env_bool(env, "GATEWAY_SENTRY_REPUTATION_ENABLED", True),
            http_timeout_seconds=_env_int(env, "GATEWAY_SENTRY_HTTP_TIMEOUT", 10),
        )

    def to_dict(self) -> dict:
        return {
            "db_path": self.db_path,
            "geo_data_dir": self.geo_data_dir,
            "crowdsec_configured": bool(self.crowdsec_api_key),
            "crowdsec_base_url": self.crowdsec_base_url,
            "maxmind_configured": bool(self.maxmind_license_key),
            "poll_interval_minutes": self.poll_interval_minutes,
            "retention_days": self.retention_days,
            "analysis_window_minutes": self.analysis_window_minutes,
            "reputation_enabled": self.reputation_enabled,
            "http_timeout_seconds": self.http_timeout_seconds,
        }
