"""
Shared fixtures for the release service tests.

The object store and release store are replaced by in-memory fakes that
implement the same access patterns as the S3 and Postgres adapters.
"""

import dataclasses
import hashlib
from typing import AsyncIterator, Dict, List, Optional

import pytest

from artifacts import DEFAULT_ARTIFACTS, DEFAULT_SKU, ArtifactKind, ArtifactPathResolver
from release_cache import ReleaseCaches
from release_errors import ObjectNotFound, ReleaseStoreError
from release_orchestrator import ReleaseOrchestrator
from release_store import INITIAL_ROLLOUT_PERCENTAGE, PersistedRelease
from releases import ReleaseLister

CDN_URL = "https://cdn.test.com"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeObjectStore:
    """Bucket contents as a flat key -> bytes mapping."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.list_calls = 0
        self.streamed: List[str] = []
        self.error: Optional[Exception] = None

    def publish(
        self,
        kind: str,
        version: str,
        sku: Optional[str] = None,
        artifact: Optional[str] = None,
        content: Optional[bytes] = None,
        digest: Optional[str] = None,
    ) -> str:
        """Upload an artifact and its .sha256 file; returns the artifact path."""
        artifact = artifact or DEFAULT_ARTIFACTS[ArtifactKind(kind)]
        if sku:
            path = f"{kind}/{version}/skus/{sku}/{artifact}"
        else:
            path = f"{kind}/{version}/{artifact}"
        if content is None:
            content = f"{path}-binary".encode()
        if digest is None:
            digest = hashlib.sha256(content).hexdigest() + "\n"
        self.objects[path] = content
        self.objects[f"{path}.sha256"] = digest.encode()
        return path

    def add_folder(self, kind: str, name: str) -> None:
        self.objects[f"{kind}/{name}/README"] = b"not a release"

    async def list_common_prefixes(self, prefix: str) -> List[str]:
        self.list_calls += 1
        if self.error:
            raise self.error
        names = []
        for key in self.objects:
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if "/" in rest:
                name = rest.split("/", 1)[0]
                if name not in names:
                    names.append(name)
        return sorted(names)

    async def prefix_exists(self, prefix: str) -> bool:
        return any(key.startswith(prefix) for key in self.objects)

    async def object_exists(self, key: str) -> bool:
        return key in self.objects

    async def get_object(self, key: str) -> bytes:
        if key not in self.objects:
            raise ObjectNotFound(f"Object {key} not found")
        return self.objects[key]

    async def iter_object(self, key: str, chunk_size: int = 1024) -> AsyncIterator[bytes]:
        if key not in self.objects:
            raise ObjectNotFound(f"Object {key} not found")
        self.streamed.append(key)
        content = self.objects[key]
        for offset in range(0, len(content), chunk_size):
            yield content[offset:offset + chunk_size]

    async def get_text(self, key: str) -> str:
        return (await self.get_object(key)).decode("utf-8", errors="replace").rstrip()


class FakeReleaseStore:
    """In-memory `releases` table keyed by (version, type)."""

    def __init__(self):
        self.releases: Dict[tuple, PersistedRelease] = {}
        self.calls: List[tuple] = []
        self.available = True

    def seed(self, version: str, release_type: str, rollout_percentage: int) -> PersistedRelease:
        artifact = DEFAULT_ARTIFACTS[ArtifactKind(release_type)]
        release = PersistedRelease(
            version=version,
            type=release_type,
            rollout_percentage=rollout_percentage,
            url=f"{CDN_URL}/{release_type}/{version}/{artifact}",
            hash=f"test-hash-{version}-{release_type}",
        )
        self.releases[(version, release_type)] = release
        return release

    async def upsert_release(
        self,
        version: str,
        release_type: str,
        url: str,
        digest: str,
        rollout_percentage: int = INITIAL_ROLLOUT_PERCENTAGE,
    ) -> PersistedRelease:
        self.calls.append(("upsert_release", version, release_type))
        key = (version, release_type)
        if key not in self.releases:
            self.releases[key] = PersistedRelease(version, release_type, rollout_percentage, url, digest)
        return self.releases[key]

    async def find_rolled_out(self, release_type: str) -> List[PersistedRelease]:
        self.calls.append(("find_rolled_out", release_type))
        return [
            r for r in self.releases.values()
            if r.type == release_type and r.rollout_percentage == 100
        ]

    async def set_rollout_percentage(
        self, version: str, release_type: str, rollout_percentage: int
    ) -> Optional[PersistedRelease]:
        self.calls.append(("set_rollout_percentage", version, release_type))
        key = (version, release_type)
        if key not in self.releases:
            return None
        self.releases[key] = dataclasses.replace(self.releases[key], rollout_percentage=rollout_percentage)
        return self.releases[key]

    async def list_releases(self, release_type: Optional[str] = None, limit: int = 50) -> List[PersistedRelease]:
        releases = [r for r in self.releases.values() if release_type in (None, r.type)]
        return releases[:limit]

    async def ping(self) -> None:
        if not self.available:
            raise ReleaseStoreError("Database unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def release_store():
    return FakeReleaseStore()


@pytest.fixture
def caches(clock):
    return ReleaseCaches.create(clock=clock)


@pytest.fixture
def resolver(object_store):
    return ArtifactPathResolver(object_store, default_sku=DEFAULT_SKU)


@pytest.fixture
def lister(object_store, resolver, caches, clock):
    return ReleaseLister(object_store, resolver, caches.releases, base_url=CDN_URL, clock=clock)


@pytest.fixture
def orchestrator(lister, release_store, caches):
    return ReleaseOrchestrator(lister, release_store, caches, default_sku=DEFAULT_SKU)
