"""
Persisted release rollout state in Postgres.

One row per (version, type). Rows are created the first time a stable
version is observed and afterwards only changed by operators adjusting the
rollout percentage.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import psycopg
from psycopg_pool import AsyncConnectionPool

from release_errors import ReleaseStoreError

logger = logging.getLogger("release-service.store")

INITIAL_ROLLOUT_PERCENTAGE = 10

SCHEMA = """
    CREATE TABLE IF NOT EXISTS releases (
        id SERIAL PRIMARY KEY,
        version TEXT NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('app', 'system')),
        rollout_percentage INTEGER NOT NULL
            CHECK (rollout_percentage BETWEEN 0 AND 100),
        url TEXT NOT NULL,
        hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (version, type)
    )
"""

_COLUMNS = "version, type, rollout_percentage, url, hash"


@dataclass(frozen=True)
class PersistedRelease:
    version: str
    type: str
    rollout_percentage: int
    url: str
    hash: str


def _to_release(row) -> PersistedRelease:
    version, release_type, rollout_percentage, url, digest = row
    return PersistedRelease(
        version=version,
        type=release_type,
        rollout_percentage=rollout_percentage,
        url=url,
        hash=digest,
    )


class ReleaseStore:
    """Access patterns against the `releases` table."""

    def __init__(self, pool: AsyncConnectionPool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute(SCHEMA)
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Failed to create releases schema: {e}", cause=e) from e

    async def ping(self) -> None:
        try:
            async with self.pool.connection() as conn:
                await conn.execute("SELECT 1")
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Database unavailable: {e}", cause=e) from e

    async def upsert_release(
        self,
        version: str,
        release_type: str,
        url: str,
        digest: str,
        rollout_percentage: int = INITIAL_ROLLOUT_PERCENTAGE,
    ) -> PersistedRelease:
        """
        Create the (version, type) row at `rollout_percentage` if absent.

        An existing row is returned unchanged and is never written to.
        """
        params = {
            "version": version,
            "type": release_type,
            "rollout_percentage": rollout_percentage,
            "url": url,
            "hash": digest,
        }
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(f"""
                        WITH inserted AS (
                            INSERT INTO releases (version, type, rollout_percentage, url, hash)
                            VALUES (%(version)s, %(type)s, %(rollout_percentage)s, %(url)s, %(hash)s)
                            ON CONFLICT (version, type) DO NOTHING
                            RETURNING {_COLUMNS}
                        )
                        SELECT {_COLUMNS} FROM inserted
                        UNION ALL
                        SELECT {_COLUMNS} FROM releases
                        WHERE version = %(version)s AND type = %(type)s
                        LIMIT 1
                    """, params)
                    row = await cur.fetchone()

                    # A row committed by a concurrent insert is invisible to
                    # the snapshot of the statement that lost the race
                    if row is None:
                        await cur.execute(f"""
                            SELECT {_COLUMNS}
                            FROM releases
                            WHERE version = %(version)s AND type = %(type)s
                        """, params)
                        row = await cur.fetchone()
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Failed to upsert {release_type} release {version}: {e}", cause=e) from e

        return _to_release(row)

    async def find_rolled_out(self, release_type: str) -> List[PersistedRelease]:
        """All releases of a type that reached 100% rollout."""
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(f"""
                        SELECT {_COLUMNS}
                        FROM releases
                        WHERE type = %(type)s AND rollout_percentage = 100
                    """, {"type": release_type})
                    rows = await cur.fetchall()
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Failed to load rolled out {release_type} releases: {e}", cause=e) from e

        return [_to_release(row) for row in rows]

    async def set_rollout_percentage(
        self,
        version: str,
        release_type: str,
        rollout_percentage: int,
    ) -> Optional[PersistedRelease]:
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(f"""
                        UPDATE releases
                        SET rollout_percentage = %(rollout_percentage)s, updated_at = NOW()
                        WHERE version = %(version)s AND type = %(type)s
                        RETURNING {_COLUMNS}
                    """, {
                        "version": version,
                        "type": release_type,
                        "rollout_percentage": rollout_percentage,
                    })
                    row = await cur.fetchone()
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Failed to update rollout for {release_type} {version}: {e}", cause=e) from e

        if row is None:
            return None
        logger.info("Rollout for %s %s set to %d%%", release_type, version, rollout_percentage)
        return _to_release(row)

    async def list_releases(self, release_type: Optional[str] = None, limit: int = 50) -> List[PersistedRelease]:
        query = f"SELECT {_COLUMNS} FROM releases"
        params = {"limit": limit}
        if release_type:
            query += " WHERE type = %(type)s"
            params["type"] = release_type
        query += " ORDER BY created_at DESC LIMIT %(limit)s"

        try:
            async with self.pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    rows = await cur.fetchall()
        except psycopg.Error as e:
            raise ReleaseStoreError(f"Failed to list releases: {e}", cause=e) from e

        return [_to_release(row) for row in rows]
