"""
Remote release discovery: version folder listing and latest-version selection.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from artifacts import ArtifactKind, ArtifactPathResolver, hash_path
from integrity import sha256_hexdigest, verify_digest
from release_cache import TTLCache
from release_errors import NotFound
from semver_gate import ANY_RANGE, max_satisfying, valid_versions

logger = logging.getLogger("release-service.releases")


@dataclass(frozen=True)
class ReleaseMetadata:
    version: str
    url: str
    hash: str
    cached_at: Optional[float] = None
    satisfying_range: Optional[str] = None


class ReleaseLister:
    """Selects releases from the version folders published in the object store."""

    def __init__(
        self,
        object_store,
        resolver: ArtifactPathResolver,
        cache: TTLCache,
        base_url: str,
        clock: Callable[[], float] = time.time,
    ):
        self.object_store = object_store
        self.resolver = resolver
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self._clock = clock

    def artifact_url(self, artifact_path: str) -> str:
        return f"{self.base_url}/{artifact_path}"

    async def list_versions(self, kind: ArtifactKind) -> List[str]:
        folders = await self.object_store.list_common_prefixes(f"{kind.value}/")
        if not folders:
            raise NotFound(f"No versions found under prefix {kind.value}")

        versions = valid_versions(folders)
        if not versions:
            raise NotFound(f"No valid versions found under prefix {kind.value}")
        return versions

    async def latest(
        self,
        kind: ArtifactKind,
        include_prerelease: bool,
        range_: str = ANY_RANGE,
        sku: Optional[str] = None,
    ) -> ReleaseMetadata:
        """
        Resolve the newest published version of `kind` satisfying `range_`.

        Results are cached per (kind, prerelease, range, sku); a cached entry
        is served as-is until it expires even if the bucket changed meanwhile.
        """
        sku = sku or self.resolver.default_sku
        cache_key = f"{kind.value}-{str(include_prerelease).lower()}-{range_}-{sku}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        versions = await self.list_versions(kind)
        version = max_satisfying(versions, range_, include_prerelease=include_prerelease)
        if not version:
            raise NotFound(f"No version found under prefix {kind.value} that satisfies {range_}")

        artifact_path = await self.resolver.resolve(kind, version, sku)
        digest = await self.object_store.get_text(hash_path(artifact_path))

        release = ReleaseMetadata(
            version=version,
            url=self.artifact_url(artifact_path),
            hash=digest,
            cached_at=self._clock(),
            satisfying_range=range_,
        )
        self.cache.set(cache_key, release)
        logger.info("Resolved %s %s (range=%s, prerelease=%s, sku=%s)", kind.value, version, range_, include_prerelease, sku)
        return release

    async def latest_verified_url(
        self,
        kind: ArtifactKind,
        include_prerelease: bool,
        sku: Optional[str] = None,
        artifact: Optional[str] = None,
        label: Optional[str] = None,
    ) -> str:
        """
        Resolve the newest artifact and verify it against its digest file.

        Returns the public URL. A digest mismatch is fatal: the artifact and
        its hash are two independent reads, so a torn publish must not be served.
        """
        sku = sku or self.resolver.default_sku
        label = label or f"{kind.value} artifact"

        versions = await self.list_versions(kind)
        version = max_satisfying(versions, ANY_RANGE, include_prerelease=include_prerelease)
        if not version:
            raise NotFound(f"No valid {label} versions found")

        artifact_path = await self.resolver.resolve(kind, version, sku, artifact)

        local_digest, digest = await asyncio.gather(
            sha256_hexdigest(self.object_store.iter_object(artifact_path)),
            self.object_store.get_object(hash_path(artifact_path)),
        )

        verify_digest(local_digest, digest, failure_reason=f"{label} hash does not match")
        logger.info("%s hash matches for %s", label, version)

        return self.artifact_url(artifact_path)
