import asyncio
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi_cache import FastAPICache
from fastapi_cache.backends.inmemory import InMemoryBackend
from fastapi_cache.backends.redis import RedisBackend
from redis import asyncio as aioredis

from crm_access.dependencies.authz import GuardRedirect, redirect_handler
from crm_access.dependencies.crm_api_client import get_settings
from crm_access.external_services.crm_api_client import close_shared_clients

logger = logging.getLogger(__name__)

load_dotenv()


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    settings = get_settings()
    redis_client = None
    if settings.redis_url:
        redis_client = aioredis.from_url(settings.redis_url, encoding="utf8", decode_responses=True)
        FastAPICache.init(RedisBackend(redis_client), prefix="api-cache")
        logger.info("FastAPI Cache initialized with Redis at %s", settings.redis_url)
    else:
        FastAPICache.init(InMemoryBackend(), prefix="api-cache")
        logger.warning("REDIS_URL not configured, FastAPI Cache using in-memory backend")

    try:
        yield
    except asyncio.CancelledError:
        logger.info("Application shutdown requested (CancelledError). Exiting gracefully.")
    except Exception:
        logger.exception("Unhandled exception during application lifespan shutdown.")
        raise
    finally:
        await close_shared_clients()
        if redis_client is not None:
            await redis_client.aclose()
            logger.info("Redis connection closed")


settings = get_settings()

tags_metadata = [
    {"name": "Root", "description": "Basic status endpoint."},
    {"name": "Health", "description": "Liveness, readiness and upstream health."},
    {"name": "Menu_Access", "description": "Resolved menu access, navigation and route guard decisions for the caller."},
    {"name": "Role_Management", "description": "🔒 Requires the ROLES menu item - role listing and the role menu-access editor."},
]

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    openapi_tags=tags_metadata,
    docs_url="/swagger",
    swagger_ui_parameters={"displayRequestDuration": True, "persistAuthorization": True},
    redoc_url="/redoc",
    lifespan=_lifespan,
)

app.add_exception_handler(GuardRedirect, redirect_handler)

_original_openapi = app.openapi


def _custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    schema = _original_openapi()

    # Single canonical bearer scheme so Swagger UI shows one Authorize button
    components = schema.setdefault("components", {})
    security_schemes = components.setdefault("securitySchemes", {})
    other_bearers = [k for k, v in security_schemes.items() if isinstance(v, dict) and v.get("type") == "http" and str(v.get("scheme", "")).lower() == "bearer"]
    for k in other_bearers:
        security_schemes.pop(k, None)
    security_schemes["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
        "description": "Access token issued by the CRM identity service",
    }

    for path_item in schema.get("paths", {}).values():
        if not isinstance(path_item, dict):
            continue
        for op in path_item.values():
            if not isinstance(op, dict) or "security" not in op:
                continue
            op["security"] = [{"BearerAuth": []} if any(k in other_bearers for k in item) else item for item in op["security"]]

    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = _custom_openapi


# Basic root endpoint
@app.get("/", tags=["Root"])
async def root():
    return {"message": settings.app_name}


# Set up GZip compression middleware (BEFORE CORS)
app.add_middleware(
    GZipMiddleware,
    minimum_size=1000,  # Only compress responses > 1KB
    compresslevel=6,
)

cors_origins = settings.cors_origin_list
logger.info("CORS enabled for origins: %s", cors_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# include routers
from .routers import health, menu_access, roles  # noqa: E402

app.include_router(health.router)
app.include_router(menu_access.router)
app.include_router(roles.router)


__all__ = ["app"]
