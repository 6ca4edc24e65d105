"""
Semver helpers used for version folder selection.

Range syntax follows npm (`^1.2.0`, `~1.1`, `1.x`, `>=1.0.0 <2.0.0`, `||`).
Junk folder names and unparsable ranges are never errors: names are filtered
out and ranges degrade to "*".
"""

import logging
from typing import Iterable, List, Optional

import nodesemver

logger = logging.getLogger("release-service.semver")

ANY_RANGE = "*"


def is_valid_version(version: str) -> bool:
    """True if `version` is a strict semver string (optionally `v`-prefixed)."""
    if not version:
        return False
    try:
        return nodesemver.parse(version, loose=False) is not None
    except ValueError:
        # e.g. numeric component too large
        return False


def valid_versions(names: Iterable[str]) -> List[str]:
    return [name for name in names if is_valid_version(name)]


def to_semver_range(range_: Optional[str]) -> str:
    """
    Normalize a client supplied version constraint.

    Missing or unparsable constraints become "*" so malformed input never
    hard-fails the update channel.
    """
    if not range_:
        return ANY_RANGE
    normalized = nodesemver.valid_range(range_, loose=False)
    if not normalized:
        logger.debug("Unparsable version range %r, matching any version", range_)
        return ANY_RANGE
    return normalized


def max_satisfying(
    versions: Iterable[str],
    range_: str = ANY_RANGE,
    include_prerelease: bool = False,
) -> Optional[str]:
    """
    Return the highest version satisfying `range_`, or None.

    Invalid version strings are dropped before matching.
    """
    candidates = valid_versions(versions)
    if not candidates:
        return None
    return nodesemver.max_satisfying(
        candidates,
        to_semver_range(range_),
        loose=False,
        include_prerelease=include_prerelease,
    )
