import logging
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from crm_access.external_services.crm_api_client import CRMAPIClient
from crm_access.services.access_resolver import ResolverRegistry
from crm_access.services.editor_store import RoleEditorStore
from crm_access.services.grant_cache import GrantCacheService

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    crm_api_base_url: str = "http://localhost:8080"
    crm_api_timeout: float = 15.0
    app_name: str = "CRM Access API"
    debug: bool = False
    redis_url: str | None = None
    grant_cache_ttl: int = 900  # 15 minutes
    enable_grant_cache: bool = True
    unauthorized_path: str = "/unauthorized"
    guard_wait_seconds: float = 10.0
    editor_session_ttl: int = 1800
    resolver_max_entries: int = 1024
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("debug", mode="before")
    @classmethod
    def _coerce_debug(cls, value):
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"1", "true", "yes", "on"}:
                return True
            if normalized in {"0", "false", "no", "off"}:
                return False
            # Treat common logging level strings as non-debug defaults instead of erroring.
            if normalized in {"warn", "warning", "info", "error", "critical"}:
                return False
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_crm_client_for(access_token: str | None) -> CRMAPIClient:
    """A client acting for one principal; the underlying httpx client is shared."""
    settings = get_settings()
    return CRMAPIClient(
        base_url=settings.crm_api_base_url,
        access_token=access_token,
        timeout=settings.crm_api_timeout,
    )


@lru_cache
def get_redis_client() -> Redis | None:
    """Get cached Redis client instance."""
    settings = get_settings()

    if not settings.redis_url:
        logger.warning("REDIS_URL not configured, grant cache disabled")
        return None

    try:
        client = Redis.from_url(
            settings.redis_url,
            decode_responses=False,  # We handle encoding with orjson
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        client.ping()
        logger.info("Redis client connected successfully")
        return client
    except (RedisConnectionError, RedisError) as exc:
        logger.warning("Failed to connect to Redis: %s", exc)
        return None


@lru_cache
def get_grant_cache() -> GrantCacheService:
    settings = get_settings()
    return GrantCacheService(
        redis_client=get_redis_client(),
        default_ttl=settings.grant_cache_ttl,
        enabled=settings.enable_grant_cache,
    )


@lru_cache
def get_resolver_registry() -> ResolverRegistry:
    return ResolverRegistry(max_entries=get_settings().resolver_max_entries)


@lru_cache
def get_editor_store() -> RoleEditorStore:
    return RoleEditorStore(ttl_seconds=get_settings().editor_session_ttl)
