"""
Artifact integrity verification against published `.sha256` files.
"""

import hashlib
from typing import AsyncIterable, Optional, Union

from release_errors import IntegrityFailure


async def sha256_hexdigest(chunks: AsyncIterable[bytes]) -> str:
    """Hash a chunk stream incrementally without keeping the chunks."""
    sha256_hash = hashlib.sha256()
    async for chunk in chunks:
        sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def verify_digest(
    local_digest: str,
    expected_digest: Union[str, bytes],
    failure_reason: Optional[str] = None,
) -> bool:
    """
    Compare a computed SHA-256 hex digest with the text of a digest file.

    Args:
        local_digest: Hex digest computed over the artifact
        expected_digest: Digest file content (hex, surrounding whitespace ignored)
        failure_reason: If given, a mismatch raises IntegrityFailure with this message

    Returns:
        True if the digests match, False otherwise
    """
    if isinstance(expected_digest, bytes):
        expected_digest = expected_digest.decode("utf-8", errors="replace")

    matches = expected_digest.strip().lower() == local_digest
    if not matches and failure_reason:
        raise IntegrityFailure(failure_reason)
    return matches
