"""Settings: secrets from the environment, timing tunables from optional YAML."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from prebooker.errors import ConfigError

logger = logging.getLogger(__name__)

# Environment variable -> Settings field
ENV_FIELDS = {
    "PREBOOKING_SECRET": "prebooking_secret",
    "QSTASH_TOKEN": "qstash_token",
    "QSTASH_URL": "qstash_url",
    "CRON_SECRET": "cron_secret",
    "PREBOOKER_API_KEY": "api_key",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_SERVICE_KEY": "supabase_service_key",
    "RESEND_API_KEY": "resend_api_key",
    "EMAIL_FROM": "email_from",
    "ADMIN_EMAIL": "admin_email",
}


class Settings(BaseModel):
    """Runtime configuration.

    The timing defaults are empirically tuned: 4s lead time covers the
    session fetch, a possible token refresh and the final wait, inside a
    10s invocation ceiling with a 2s safety margin.
    """

    prebooking_secret: str = ""
    qstash_token: str = ""
    qstash_url: str = "https://qstash.upstash.io"
    app_url: str = "http://localhost:3000"
    cron_secret: str = ""
    api_key: str = ""
    supabase_url: str = ""
    supabase_service_key: str = ""
    resend_api_key: str = ""
    email_from: str = "Prebooker <reservas@prebooker.app>"
    admin_email: str = ""

    lead_time_seconds: float = Field(default=4.0, gt=0, le=30)
    refresh_threshold_minutes: float = Field(default=25.0, gt=0)
    keepalive_threshold_minutes: float = Field(default=20.0, gt=0)
    invocation_ceiling_seconds: float = Field(default=10.0, gt=0)
    timeout_buffer_seconds: float = Field(default=2.0, ge=0)
    fire_timeout_seconds: float = Field(default=3.0, gt=0)
    refresh_timeout_seconds: float = Field(default=3.0, gt=0)
    sweep_stagger_ms: int = Field(default=50, ge=0)
    sweep_batch_size: int = Field(default=25, ge=1, le=500)

    @property
    def max_execution_seconds(self) -> float:
        return self.invocation_ceiling_seconds - self.timeout_buffer_seconds

    @property
    def callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/execute-prebooking"

    def require(self, *names: str) -> None:
        """Raise ConfigError if any of the named settings is empty."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")


def load_dotenv(path: Path | None = None) -> None:
    """Load KEY=VALUE lines from .env without overriding existing env vars."""
    candidates = [path] if path else [Path(__file__).parents[2] / ".env", Path.cwd() / ".env"]
    for env_path in candidates:
        if env_path is None or not env_path.exists():
            continue
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    os.environ.setdefault(key.strip(), value.strip().strip('"'))
        logger.info("Loaded .env from %s", env_path)
        return


def load_settings(
    path: str | Path | None = None, env: Mapping[str, str] | None = None
) -> Settings:
    """Build Settings from an optional YAML tunables file plus the environment."""
    env = os.environ if env is None else env
    data: dict = {}

    path = path or env.get("PREBOOKER_CONFIG")
    if path:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(
                f"Config file must contain a YAML mapping, got {type(loaded).__name__}"
            )
        data.update(loaded)

    for var, field_name in ENV_FIELDS.items():
        if env.get(var):
            data[field_name] = env[var]

    # Deployment URL: explicit APP_URL wins over the platform-provided host
    if env.get("APP_URL"):
        data["app_url"] = env["APP_URL"]
    elif env.get("VERCEL_URL"):
        data["app_url"] = f"https://{env['VERCEL_URL']}"

    try:
        return Settings.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config: {e}") from e
