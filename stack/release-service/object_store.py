"""
S3-compatible object store access (Cloudflare R2 in production).

Only the read-side access patterns the release service needs: listing
version folders, probing prefixes and keys, fetching small objects and
streaming artifacts.
"""

import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, List, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from release_errors import ObjectNotFound, ObjectStoreError

logger = logging.getLogger("release-service.object-store")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

STREAM_CHUNK_SIZE = 64 * 1024


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in _NOT_FOUND_CODES or status == 404


class S3ObjectStore:
    """
    Read-only view of a release bucket.

    The underlying aiobotocore client is opened once by `start()` and shared
    by all requests until `close()`.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        region: str = "auto",
    ):
        self.bucket = bucket
        self._endpoint_url = endpoint_url
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
        )
        self._exit_stack: Optional[AsyncExitStack] = None
        self._client: Any = None

    async def start(self) -> None:
        if self._client is not None:
            return
        logger.info("Opening object store client for bucket %s at %s", self.bucket, self._endpoint_url)
        self._exit_stack = AsyncExitStack()
        self._client = await self._exit_stack.enter_async_context(
            self._session.client("s3", endpoint_url=self._endpoint_url)
        )

    async def close(self) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._client = None

    @property
    def client(self) -> Any:
        if self._client is None:
            raise ObjectStoreError("Object store client is not started")
        return self._client

    async def list_common_prefixes(self, prefix: str) -> List[str]:
        """
        List the immediate "folder" names below `prefix`.

        `list_common_prefixes("app/")` returns e.g. ["1.0.0", "1.1.0"].
        """
        names: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix, Delimiter="/"):
                for common_prefix in page.get("CommonPrefixes") or []:
                    name = common_prefix["Prefix"][len(prefix):].strip("/")
                    if name:
                        names.append(name)
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to list {prefix}: {e}", cause=e) from e
        return names

    async def prefix_exists(self, prefix: str) -> bool:
        try:
            response = await self.client.list_objects_v2(Bucket=self.bucket, Prefix=prefix, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            raise ObjectStoreError(f"Failed to list {prefix}: {e}", cause=e) from e
        return len(response.get("Contents") or []) > 0

    async def object_exists(self, key: str) -> bool:
        try:
            await self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            # R2 answers NoSuchKey where S3 answers NotFound
            if _is_not_found(e):
                return False
            raise ObjectStoreError(f"Failed to check {key}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Failed to check {key}: {e}", cause=e) from e
        return True

    async def get_object(self, key: str) -> bytes:
        try:
            response = await self.client.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFound(f"Object {key} not found") from e
            raise ObjectStoreError(f"Failed to fetch {key}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Failed to fetch {key}: {e}", cause=e) from e

    async def iter_object(self, key: str, chunk_size: int = STREAM_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """
        Stream an object body in chunks of at most `chunk_size` bytes.

        The object is never held in memory as a whole.
        """
        try:
            response = await self.client.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as stream:
                while True:
                    chunk = await stream.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFound(f"Object {key} not found") from e
            raise ObjectStoreError(f"Failed to stream {key}: {e}", cause=e) from e
        except BotoCoreError as e:
            raise ObjectStoreError(f"Failed to stream {key}: {e}", cause=e) from e

    async def get_text(self, key: str) -> str:
        content = await self.get_object(key)
        return content.decode("utf-8", errors="replace").rstrip()
