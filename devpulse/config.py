import os
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from devpulse.domain.exceptions import ConfigurationException
from devpulse.domain.models import ResourceKind
from devpulse.domain.staleness import DEFAULT_MAX_AGE_MINUTES


class Settings(BaseModel):
    """
    Runtime configuration, read from the environment (and a .env file).
    """
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(..., min_length=1)
    github_token: Optional[str] = None
    ttl_profile_minutes: int = Field(DEFAULT_MAX_AGE_MINUTES[ResourceKind.PROFILE], gt=0)
    ttl_repos_minutes: int = Field(DEFAULT_MAX_AGE_MINUTES[ResourceKind.REPOSITORIES], gt=0)
    ttl_events_minutes: int = Field(DEFAULT_MAX_AGE_MINUTES[ResourceKind.EVENTS], gt=0)
    fetch_limit: int = Field(30, ge=1, le=100)
    coalesce_refreshes: bool = False
    metrics_pushgateway: Optional[str] = Field(None, description="host:port of a Prometheus Pushgateway")
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"

    def cache_ttls(self) -> Mapping[ResourceKind, int]:
        return {
            ResourceKind.PROFILE: self.ttl_profile_minutes,
            ResourceKind.REPOSITORIES: self.ttl_repos_minutes,
            ResourceKind.EVENTS: self.ttl_events_minutes,
        }


def _int_env(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationException(f"{name} must be an integer, got {raw!r}.") from None


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds Settings from `env`, or from os.environ after loading .env.

    Raises:
        ConfigurationException: A required value is missing or a value is invalid.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    db_url = env.get("DATABASE_URL")
    if not db_url:
        raise ConfigurationException("DATABASE_URL is not set in the environment.")

    try:
        return Settings(
            database_url=db_url,
            github_token=env.get("GITHUB_TOKEN") or None,
            ttl_profile_minutes=_int_env(env, "CACHE_TTL_PROFILE_MINUTES", DEFAULT_MAX_AGE_MINUTES[ResourceKind.PROFILE]),
            ttl_repos_minutes=_int_env(env, "CACHE_TTL_REPOS_MINUTES", DEFAULT_MAX_AGE_MINUTES[ResourceKind.REPOSITORIES]),
            ttl_events_minutes=_int_env(env, "CACHE_TTL_EVENTS_MINUTES", DEFAULT_MAX_AGE_MINUTES[ResourceKind.EVENTS]),
            fetch_limit=_int_env(env, "GITHUB_FETCH_LIMIT", 30),
            coalesce_refreshes=env.get("COALESCE_REFRESHES", "false").strip().lower() in {"1", "true", "yes"},
            metrics_pushgateway=env.get("METRICS_PUSHGATEWAY") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
    except ValueError as e:
        raise ConfigurationException(str(e)) from e
