"""Shared fixtures.

Tests run against fakeredis (with Lua support) by default. Pass
--redis-url or set REDIS_TEST_URL to run them against a real server; the
selected database is flushed before every test.
"""

import os

import fakeredis
import pytest
import redis

from cascache.client import RedisCasCache


def pytest_addoption(parser):
    parser.addoption(
        "--redis-url",
        action="store",
        default=None,
        help="Run against a real Redis server instead of fakeredis (e.g. redis://localhost:6379/15).",
    )


@pytest.fixture
def pool(request):
    url = request.config.getoption("--redis-url") or os.getenv("REDIS_TEST_URL")
    if url:
        pool = redis.ConnectionPool.from_url(url)
        redis.Redis(connection_pool=pool).flushdb()
        yield pool
        pool.disconnect()
    else:
        yield fakeredis.FakeRedis(server=fakeredis.FakeServer()).connection_pool


@pytest.fixture
def r(pool):
    """Raw client on the same store, for poking at stored bytes."""
    return redis.Redis(connection_pool=pool)


@pytest.fixture
def cache(pool):
    return RedisCasCache(pool)
