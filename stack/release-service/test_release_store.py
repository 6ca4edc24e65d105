"""
Unit tests for the Postgres release store.

The connection pool, connections and cursors are mocked the same way the
OTA service tests mock psycopg.
"""

from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest

from release_errors import ReleaseStoreError, UpstreamFailure
from release_store import PersistedRelease, ReleaseStore


def make_pool(cursor):
    """Build a mock AsyncConnectionPool whose connections hand out `cursor`."""
    conn = MagicMock()
    conn.execute = AsyncMock()

    cursor_cm = MagicMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=False)
    conn.cursor.return_value = cursor_cm

    conn_cm = MagicMock()
    conn_cm.__aenter__ = AsyncMock(return_value=conn)
    conn_cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.connection.return_value = conn_cm
    return pool, conn


def make_cursor():
    cursor = MagicMock()
    cursor.execute = AsyncMock()
    cursor.fetchone = AsyncMock()
    cursor.fetchall = AsyncMock()
    return cursor


@pytest.mark.asyncio
async def test_upsert_release_is_single_conditional_insert():
    cursor = make_cursor()
    cursor.fetchone.return_value = ("1.2.0", "app", 10, "https://cdn.test.com/app/1.2.0/jetkvm_app", "abc")
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    release = await store.upsert_release("1.2.0", "app", "https://cdn.test.com/app/1.2.0/jetkvm_app", "abc")

    assert release == PersistedRelease("1.2.0", "app", 10, "https://cdn.test.com/app/1.2.0/jetkvm_app", "abc")
    cursor.execute.assert_awaited_once()
    sql, params = cursor.execute.await_args.args
    assert "ON CONFLICT (version, type) DO NOTHING" in sql
    assert "DO UPDATE" not in sql
    assert "UPDATE releases" not in sql
    assert params["rollout_percentage"] == 10
    assert params["type"] == "app"


@pytest.mark.asyncio
async def test_upsert_release_rereads_row_from_concurrent_insert():
    cursor = make_cursor()
    cursor.fetchone.side_effect = [None, ("1.2.0", "app", 10, "https://cdn/app/1.2.0", "abc")]
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    release = await store.upsert_release("1.2.0", "app", "https://cdn/app/1.2.0", "abc")

    assert release.version == "1.2.0"
    assert cursor.execute.await_count == 2
    sql, params = cursor.execute.await_args.args
    assert sql.strip().startswith("SELECT")
    assert params["version"] == "1.2.0"


@pytest.mark.asyncio
async def test_upsert_release_returns_existing_row():
    cursor = make_cursor()
    cursor.fetchone.return_value = ("1.2.0", "system", 60, "https://cdn/system.tar", "old-hash")
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    release = await store.upsert_release("1.2.0", "system", "https://cdn/new", "new-hash")

    assert release.rollout_percentage == 60
    assert release.hash == "old-hash"


@pytest.mark.asyncio
async def test_find_rolled_out():
    cursor = make_cursor()
    cursor.fetchall.return_value = [
        ("1.0.0", "app", 100, "https://cdn/app/1.0.0", "h1"),
        ("1.1.0", "app", 100, "https://cdn/app/1.1.0", "h2"),
    ]
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    releases = await store.find_rolled_out("app")

    assert [r.version for r in releases] == ["1.0.0", "1.1.0"]
    sql, params = cursor.execute.await_args.args
    assert "rollout_percentage = 100" in sql
    assert params == {"type": "app"}


@pytest.mark.asyncio
async def test_set_rollout_percentage():
    cursor = make_cursor()
    cursor.fetchone.return_value = ("1.2.0", "app", 50, "https://cdn/app/1.2.0", "h")
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    release = await store.set_rollout_percentage("1.2.0", "app", 50)

    assert release.rollout_percentage == 50


@pytest.mark.asyncio
async def test_set_rollout_percentage_unknown_release():
    cursor = make_cursor()
    cursor.fetchone.return_value = None
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    assert await store.set_rollout_percentage("9.9.9", "app", 50) is None


@pytest.mark.asyncio
async def test_list_releases_filters_by_type():
    cursor = make_cursor()
    cursor.fetchall.return_value = []
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    await store.list_releases("system", limit=5)

    sql, params = cursor.execute.await_args.args
    assert "WHERE type = %(type)s" in sql
    assert params == {"type": "system", "limit": 5}


@pytest.mark.asyncio
async def test_database_errors_are_wrapped():
    cursor = make_cursor()
    cursor.execute.side_effect = psycopg.OperationalError("connection refused")
    pool, _ = make_pool(cursor)
    store = ReleaseStore(pool)

    with pytest.raises(ReleaseStoreError) as exc_info:
        await store.find_rolled_out("app")
    assert isinstance(exc_info.value, UpstreamFailure)
    assert isinstance(exc_info.value.cause, psycopg.OperationalError)


@pytest.mark.asyncio
async def test_ensure_schema_and_ping():
    cursor = make_cursor()
    pool, conn = make_pool(cursor)
    store = ReleaseStore(pool)

    await store.ensure_schema()
    await store.ping()

    schema_sql = conn.execute.await_args_list[0].args[0]
    assert "UNIQUE (version, type)" in schema_sql
    assert conn.execute.await_args_list[1].args[0] == "SELECT 1"


@pytest.mark.asyncio
async def test_ping_failure():
    cursor = make_cursor()
    pool, conn = make_pool(cursor)
    conn.execute.side_effect = psycopg.OperationalError("down")
    store = ReleaseStore(pool)

    with pytest.raises(ReleaseStoreError):
        await store.ping()
