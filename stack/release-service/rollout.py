"""
Deterministic staged-rollout bucketing.

A device's bucket depends only on the bytes of its identifier, so rollout
membership is stable across requests, restarts and redeploys.
"""

import hashlib

BUCKET_COUNT = 100
FULL_ROLLOUT = 100

# Number of hex digits (32 bits) of the digest interpreted as the bucket source
_PREFIX_HEX_DIGITS = 8


def device_rollout_bucket(device_id: str) -> int:
    """
    Compute the rollout bucket (0-99) for a device.

    Uses the first 32 bits of the MD5 digest of the device id. This is not a
    security boundary, only a uniform and reproducible spread of devices.
    """
    digest = hashlib.md5(device_id.encode("utf-8")).hexdigest()
    return int(digest[:_PREFIX_HEX_DIGITS], 16) % BUCKET_COUNT


def is_eligible(bucket: int, rollout_percentage: int) -> bool:
    """
    Check whether a bucket falls within a rollout percentage.

    A full rollout is eligible unconditionally.
    """
    if rollout_percentage == FULL_ROLLOUT:
        return True
    return bucket < rollout_percentage
