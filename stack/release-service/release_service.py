"""
Paku Release Service

REST API that tells devices which app and system build to run.
Provides endpoints for:
- Per-device release resolution with staged percentage rollouts
- Redirects to the latest verified app and system recovery artifacts
- Rollout management for operators
- Health checks

Artifacts are published to an S3-compatible bucket (Cloudflare R2) and served
through a CDN; rollout state is kept in Postgres.

Environment variables:
    PGHOST, PGPORT, PGUSER, PGPASSWORD, PGDATABASE
    R2_ENDPOINT, R2_ACCESS_KEY_ID, R2_SECRET_ACCESS_KEY, R2_BUCKET, R2_CDN_URL
    DEFAULT_SKU (default: jetkvm-v2)
    CACHE_TTL_SECONDS (default: 300)
    API_KEY (optional: for admin endpoints)
    PORT (default: 8080)
"""

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from artifacts import DEFAULT_SKU, ArtifactKind, ArtifactPathResolver
from object_store import S3ObjectStore
from release_cache import ReleaseCaches
from release_errors import ReleaseServiceError, ReleaseStoreError
from release_orchestrator import ReleaseOrchestrator, ReleaseResponse, RetrieveQuery
from release_store import ReleaseStore
from releases import ReleaseLister


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------
class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    pghost: str = "postgres"
    pgport: int = 5432
    pguser: str
    pgpassword: str
    pgdatabase: str
    pg_pool_min_size: int = 1
    pg_pool_max_size: int = 10

    # Object storage
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_bucket: str = "releases"
    r2_region: str = "auto"
    r2_cdn_url: str = "http://localhost:8080"

    # Releases
    default_sku: str = DEFAULT_SKU
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 1000
    initial_rollout_percentage: int = Field(10, ge=0, le=100)

    # API Security
    api_key: Optional[str] = None

    # Server
    port: int = 8080
    host: str = "0.0.0.0"
    log_level: str = "INFO"

    @property
    def pg_conninfo(self) -> str:
        return (
            f"host={self.pghost} port={self.pgport} user={self.pguser} "
            f"password={self.pgpassword} dbname={self.pgdatabase}"
        )


settings = Settings()

# ---------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("release-service")


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the process-wide store, object store client and caches."""
    pool = AsyncConnectionPool(
        settings.pg_conninfo,
        min_size=settings.pg_pool_min_size,
        max_size=settings.pg_pool_max_size,
        open=False,
    )
    await pool.open()
    store = ReleaseStore(pool)
    await store.ensure_schema()

    object_store = S3ObjectStore(
        bucket=settings.r2_bucket,
        endpoint_url=settings.r2_endpoint,
        access_key_id=settings.r2_access_key_id,
        secret_access_key=settings.r2_secret_access_key,
        region=settings.r2_region,
    )
    await object_store.start()

    caches = ReleaseCaches.create(
        maxsize=settings.cache_max_entries,
        ttl_seconds=settings.cache_ttl_seconds,
    )
    resolver = ArtifactPathResolver(object_store, default_sku=settings.default_sku)
    lister = ReleaseLister(object_store, resolver, caches.releases, base_url=settings.r2_cdn_url)

    app.state.store = store
    app.state.orchestrator = ReleaseOrchestrator(
        lister,
        store,
        caches,
        default_sku=settings.default_sku,
        initial_rollout_percentage=settings.initial_rollout_percentage,
    )
    logger.info("Release service ready (bucket=%s, default_sku=%s)", settings.r2_bucket, settings.default_sku)

    try:
        yield
    finally:
        await object_store.close()
        await pool.close()
        logger.info("Release service stopped")


# ---------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------
app = FastAPI(
    title="Paku Release Service",
    description="App and system release resolution with staged rollouts",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------
@app.exception_handler(ReleaseServiceError)
async def release_error_handler(request: Request, exc: ReleaseServiceError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} for {request.method} {request.url}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} for {request.method} {request.url}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed logging."""
    logger.error(f"Validation error for {request.method} {request.url}")
    logger.error(f"Query params: {dict(request.query_params)}")
    logger.error(f"Validation errors: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": exc.errors()})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests."""
    logger.info(f"Request: {request.method} {request.url}")
    response = await call_next(request)
    logger.info(f"Response status: {response.status_code}")
    return response


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------
def get_orchestrator(request: Request) -> ReleaseOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> ReleaseStore:
    return request.app.state.store


def is_true(flag: Optional[str]) -> bool:
    """Device query flags are enabled only by the exact string "true"."""
    return flag == "true"


def verify_api_key(x_api_key: Optional[str] = Header(None)) -> bool:
    """Verify API key for admin endpoints (optional)."""
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True


# ---------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------
class RolloutUpdate(BaseModel):
    rollout_percentage: int = Field(..., ge=0, le=100)


class ReleaseInfo(BaseModel):
    version: str
    type: str
    rollout_percentage: int
    url: str
    hash: str


# ---------------------------------------------------------------------
# API Endpoints - Device Facing
# ---------------------------------------------------------------------
@app.get("/releases", response_model=ReleaseResponse, response_model_by_alias=True)
async def retrieve_release(
    device_id: Optional[str] = Query(None, alias="deviceId", description="Unique device identifier"),
    prerelease: Optional[str] = Query(None, description="Only the literal \"true\" enables prereleases"),
    app_version: Optional[str] = Query(None, alias="appVersion", description="Semver range for the app"),
    system_version: Optional[str] = Query(None, alias="systemVersion", description="Semver range for the system"),
    sku: Optional[str] = Query(None, description="Hardware SKU"),
    force_update: Optional[str] = Query(None, alias="forceUpdate"),
    orchestrator: ReleaseOrchestrator = Depends(get_orchestrator),
):
    """
    Resolve the app and system release for a device.

    Background checks follow staged rollout; `forceUpdate` is sent when the
    user manually checks for updates.
    """
    return await orchestrator.retrieve(RetrieveQuery(
        device_id=device_id,
        prerelease=is_true(prerelease),
        app_version=app_version,
        system_version=system_version,
        sku=sku,
        force_update=is_true(force_update),
    ))


@app.get("/releases/app/latest")
async def retrieve_latest_app(
    prerelease: Optional[str] = Query(None),
    sku: Optional[str] = Query(None),
    orchestrator: ReleaseOrchestrator = Depends(get_orchestrator),
):
    """Redirect to the latest verified app binary."""
    url = await orchestrator.latest_app_url(is_true(prerelease), sku)
    return RedirectResponse(url, status_code=302)


@app.get("/releases/system_recovery/latest")
async def retrieve_latest_system_recovery(
    prerelease: Optional[str] = Query(None),
    sku: Optional[str] = Query(None),
    orchestrator: ReleaseOrchestrator = Depends(get_orchestrator),
):
    """Redirect to the latest verified system recovery image."""
    url = await orchestrator.latest_system_recovery_url(is_true(prerelease), sku)
    return RedirectResponse(url, status_code=302)


# ---------------------------------------------------------------------
# API Endpoints - Admin/Management
# ---------------------------------------------------------------------
@app.get("/api/admin/releases")
async def list_releases(
    release_type: Optional[ArtifactKind] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    store: ReleaseStore = Depends(get_store),
    _: bool = Depends(verify_api_key),
):
    """List persisted releases and their rollout percentages."""
    releases = await store.list_releases(release_type.value if release_type else None, limit)
    return {"releases": [ReleaseInfo(**asdict(r)) for r in releases]}


@app.put("/api/admin/releases/{release_type}/{version}/rollout", response_model=ReleaseInfo)
async def update_rollout(
    release_type: ArtifactKind,
    version: str,
    update: RolloutUpdate,
    store: ReleaseStore = Depends(get_store),
    _: bool = Depends(verify_api_key),
):
    """Change the rollout percentage of a persisted release."""
    logger.info(f"Rollout update: {release_type.value} {version} -> {update.rollout_percentage}%")
    release = await store.set_rollout_percentage(version, release_type.value, update.rollout_percentage)
    if release is None:
        raise HTTPException(status_code=404, detail="Release not found")
    return ReleaseInfo(**asdict(release))


@app.post("/api/admin/cache/clear")
async def clear_cache(
    orchestrator: ReleaseOrchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    """Drop cached release metadata and redirect targets."""
    orchestrator.clear_caches()
    return {"status": "ok", "message": "Caches cleared"}


# ---------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------
@app.get("/health")
async def health_check(store: ReleaseStore = Depends(get_store)):
    """Health check endpoint."""
    try:
        await store.ping()
        return {"status": "healthy"}
    except ReleaseStoreError as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unavailable")


# ---------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(f"Starting release service on {settings.host}:{settings.port}")
    uvicorn.run(
        "release_service:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
