"""
Release resolution for devices.

Composes remote release discovery with the persisted rollout state to decide
which app and system build a device receives.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from artifacts import RECOVERY_IMAGE, ArtifactKind
from release_cache import ReleaseCaches
from release_errors import ConfigurationError, InvalidInput, NotFound, UpstreamFailure
from release_store import INITIAL_ROLLOUT_PERCENTAGE, PersistedRelease
from releases import ReleaseLister
from rollout import device_rollout_bucket, is_eligible
from semver_gate import ANY_RANGE, max_satisfying, to_semver_range

logger = logging.getLogger("release-service.orchestrator")


@dataclass
class RetrieveQuery:
    device_id: Optional[str] = None
    prerelease: bool = False
    app_version: Optional[str] = None
    system_version: Optional[str] = None
    sku: Optional[str] = None
    force_update: bool = False


class ReleaseResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_version: str = Field(alias="appVersion")
    app_url: str = Field(alias="appUrl")
    app_hash: str = Field(alias="appHash")
    system_version: str = Field(alias="systemVersion")
    system_url: str = Field(alias="systemUrl")
    system_hash: str = Field(alias="systemHash")

    @classmethod
    def compose(cls, app, system) -> "ReleaseResponse":
        """Build a response from any two records with version/url/hash."""
        return cls(
            app_version=app.version,
            app_url=app.url,
            app_hash=app.hash,
            system_version=system.version,
            system_url=system.url,
            system_hash=system.hash,
        )


class ReleaseOrchestrator:
    """Per-request release decision, shared across all requests."""

    def __init__(
        self,
        lister: ReleaseLister,
        store,
        caches: ReleaseCaches,
        default_sku: str,
        initial_rollout_percentage: int = INITIAL_ROLLOUT_PERCENTAGE,
    ):
        self.lister = lister
        self.store = store
        self.caches = caches
        self.default_sku = default_sku
        self.initial_rollout_percentage = initial_rollout_percentage

    def clear_caches(self) -> None:
        self.caches.clear()

    async def retrieve(self, query: RetrieveQuery) -> ReleaseResponse:
        """
        Resolve the app and system release a device should run.

        Explicit version ranges and prerelease requests bypass staged rollout
        and never touch the persisted store. Otherwise the newest versions are
        recorded (at the initial rollout percentage when first seen) and each
        kind is served the newest release only if the device's bucket falls
        within its rollout percentage, else the default release.
        """
        if not query.device_id:
            raise InvalidInput("Device ID is required")

        app_range = to_semver_range(query.app_version)
        system_range = to_semver_range(query.system_version)
        sku = query.sku or self.default_sku
        skip_rollout = app_range != ANY_RANGE or system_range != ANY_RANGE

        remote_app, remote_system = await self._latest_from_storage(
            query.prerelease, app_range, system_range, sku
        )

        if query.prerelease or skip_rollout:
            return ReleaseResponse.compose(remote_app, remote_system)

        latest_app = await self.store.upsert_release(
            remote_app.version, ArtifactKind.APP.value, remote_app.url, remote_app.hash,
            rollout_percentage=self.initial_rollout_percentage,
        )
        latest_system = await self.store.upsert_release(
            remote_system.version, ArtifactKind.SYSTEM.value, remote_system.url, remote_system.hash,
            rollout_percentage=self.initial_rollout_percentage,
        )

        # Manual "check for update" from the UI, not background polling
        if query.force_update:
            return ReleaseResponse.compose(latest_app, latest_system)

        default_app = await self.default_release(ArtifactKind.APP)
        default_system = await self.default_release(ArtifactKind.SYSTEM)

        bucket = device_rollout_bucket(query.device_id)
        app = latest_app if is_eligible(bucket, latest_app.rollout_percentage) else default_app
        system = latest_system if is_eligible(bucket, latest_system.rollout_percentage) else default_system

        logger.debug(
            "Device %s bucket=%d app=%s (%d%%) system=%s (%d%%)",
            query.device_id, bucket,
            app.version, latest_app.rollout_percentage,
            system.version, latest_system.rollout_percentage,
        )
        return ReleaseResponse.compose(app, system)

    async def default_release(self, kind: ArtifactKind) -> PersistedRelease:
        """The newest release of `kind` at 100% rollout."""
        rolled_out = await self.store.find_rolled_out(kind.value)
        latest_version = max_satisfying([r.version for r in rolled_out], ANY_RANGE)
        for release in rolled_out:
            if release.version == latest_version:
                return release
        raise ConfigurationError(f"No default release found for type {kind.value}")

    async def _latest_from_storage(self, prerelease: bool, app_range: str, system_range: str, sku: str):
        try:
            return await asyncio.gather(
                self.lister.latest(ArtifactKind.APP, prerelease, app_range, sku),
                self.lister.latest(ArtifactKind.SYSTEM, prerelease, system_range, sku),
            )
        except NotFound:
            raise
        except Exception as e:
            logger.exception("Failed to get the latest release from storage")
            raise UpstreamFailure(f"Failed to get the latest release from storage: {e}", cause=e) from e

    # -----------------------------------------------------------------
    # Redirect targets
    # -----------------------------------------------------------------
    async def latest_app_url(self, prerelease: bool = False, sku: Optional[str] = None) -> str:
        sku = sku or self.default_sku
        return await self._cached_redirect(
            ("app", prerelease, sku),
            lambda: self.lister.latest_verified_url(ArtifactKind.APP, prerelease, sku, label="app"),
        )

    async def latest_system_recovery_url(self, prerelease: bool = False, sku: Optional[str] = None) -> str:
        sku = sku or self.default_sku
        return await self._cached_redirect(
            ("system-recovery", prerelease, sku),
            lambda: self.lister.latest_verified_url(
                ArtifactKind.SYSTEM, prerelease, sku,
                artifact=RECOVERY_IMAGE, label="system recovery image",
            ),
        )

    async def _cached_redirect(
        self,
        key_parts: Tuple[str, bool, str],
        resolve: Callable[[], Awaitable[str]],
    ) -> str:
        name, prerelease, sku = key_parts
        cache_key = f"{name}-{'pre' if prerelease else 'stable'}-{sku}"
        url = self.caches.redirects.get(cache_key)
        if url is None:
            url = await resolve()
            self.caches.redirects.set(cache_key, url)
        return url
