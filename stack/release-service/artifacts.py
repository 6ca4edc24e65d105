"""
Artifact layout in the release bucket and SKU-aware path resolution.

Bucket layout:

    app/<version>/jetkvm_app                      legacy (default SKU only)
    app/<version>/skus/<sku>/jetkvm_app           SKU partitioned
    system/<version>/system.tar
    system/<version>/skus/<sku>/update.img        recovery image

Every artifact has its digest next to it at `<artifact path>.sha256`.
"""

import logging
from enum import Enum
from typing import Optional

from release_errors import NotFound

logger = logging.getLogger("release-service.artifacts")

DEFAULT_SKU = "jetkvm-v2"
RECOVERY_IMAGE = "update.img"
HASH_SUFFIX = ".sha256"


class ArtifactKind(str, Enum):
    APP = "app"
    SYSTEM = "system"


DEFAULT_ARTIFACTS = {
    ArtifactKind.APP: "jetkvm_app",
    ArtifactKind.SYSTEM: "system.tar",
}


def hash_path(artifact_path: str) -> str:
    return f"{artifact_path}{HASH_SUFFIX}"


class ArtifactPathResolver:
    """
    Decide where the artifact for (kind, version, sku) lives.

    A device must never receive a binary that was not validated for its SKU:
    partitioned versions only serve the exact SKU requested, and legacy
    versions only serve the default SKU.
    """

    def __init__(self, object_store, default_sku: str = DEFAULT_SKU):
        self.object_store = object_store
        self.default_sku = default_sku

    async def has_sku_support(self, kind: ArtifactKind, version: str) -> bool:
        return await self.object_store.prefix_exists(f"{kind.value}/{version}/skus/")

    async def resolve(
        self,
        kind: ArtifactKind,
        version: str,
        sku: str,
        artifact: Optional[str] = None,
    ) -> str:
        artifact = artifact or DEFAULT_ARTIFACTS[kind]

        if await self.has_sku_support(kind, version):
            sku_path = f"{kind.value}/{version}/skus/{sku}/{artifact}"
            if await self.object_store.object_exists(sku_path):
                return sku_path
            raise NotFound(f'SKU "{sku}" is not available for version {version}')

        if sku == self.default_sku:
            return f"{kind.value}/{version}/{artifact}"

        logger.info("Refusing legacy %s %s for SKU %s", kind.value, version, sku)
        raise NotFound(f'Version {version} predates SKU support and cannot serve SKU "{sku}"')
