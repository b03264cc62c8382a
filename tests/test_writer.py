import pytest
import redis

from cascache.codec import new_version
from cascache.writer import CasOp, LuaConditionalWriter, WatchConditionalWriter


@pytest.fixture(params=[LuaConditionalWriter, WatchConditionalWriter], ids=["lua", "watch"])
def writer(request, r):
    return request.param(r)


def stored(version, payload=b"payload"):
    return version + payload


def test_matching_version_is_replaced(writer, r):
    v1, v2 = new_version(), new_version()
    r.set("k", stored(v1))
    assert writer.try_compare_and_set("k", v1, stored(v2, b"next"))
    assert r.get("k") == stored(v2, b"next")


def test_mismatched_version_is_left_alone(writer, r):
    r.set("k", stored(new_version()))
    before = r.get("k")
    assert not writer.try_compare_and_set("k", new_version(), stored(new_version()))
    assert r.get("k") == before


def test_missing_key_fails_without_creating(writer, r):
    assert not writer.try_compare_and_set("k", new_version(), stored(new_version()))
    assert not r.exists("k")


def test_only_the_version_prefix_is_compared(writer, r):
    v1 = new_version()
    r.set("k", stored(v1, b"whatever was stored"))
    assert writer.try_compare_and_set("k", v1, stored(new_version()))


def test_ttl(writer, r):
    v1 = new_version()
    r.set("k", stored(v1))
    assert writer.try_compare_and_set("k", v1, stored(new_version()), ttl_seconds=30)
    assert 0 < r.ttl("k") <= 30


def test_batch_reports_each_key(writer, r):
    versions = {k: new_version() for k in ("a", "b", "c")}
    for k, v in versions.items():
        r.set(k, stored(v))
    ops = [
        CasOp("a", versions["a"], stored(new_version(), b"A")),
        CasOp("b", new_version(), stored(new_version(), b"B")),
        CasOp("c", versions["c"], stored(new_version(), b"C"), ttl_seconds=10),
        CasOp("d", new_version(), stored(new_version(), b"D")),
    ]
    assert writer.compare_and_set_many(ops) == {"a", "c"}
    assert r.get("a").endswith(b"A")
    assert r.get("b") == stored(versions["b"])
    assert r.get("c").endswith(b"C")
    assert not r.exists("d")


def test_empty_batch(writer):
    assert writer.compare_and_set_many([]) == set()


@pytest.fixture
def round_trips(monkeypatch):
    """Record every exchange with the server: pipelines and single commands."""
    trips = []
    pipeline_cls = redis.client.Pipeline
    run_pipeline = pipeline_cls._execute_pipeline
    run_immediate = pipeline_cls.immediate_execute_command
    run_command = redis.Redis.execute_command

    def pipeline(self, connection, commands, *args, **kwargs):
        trips.append(("pipeline", len(commands)))
        return run_pipeline(self, connection, commands, *args, **kwargs)

    def immediate(self, *args, **kwargs):
        trips.append(("command", args[0]))
        return run_immediate(self, *args, **kwargs)

    def command(self, *args, **kwargs):
        trips.append(("command", args[0]))
        return run_command(self, *args, **kwargs)

    monkeypatch.setattr(pipeline_cls, "_execute_pipeline", pipeline)
    monkeypatch.setattr(pipeline_cls, "immediate_execute_command", immediate)
    monkeypatch.setattr(redis.Redis, "execute_command", command)
    return trips


def test_lua_batch_is_one_round_trip(r, round_trips):
    writer = LuaConditionalWriter(r)
    writer.compare_and_set_many([CasOp(f"warm{i}", new_version(), stored(new_version())) for i in range(5)])

    round_trips.clear()
    ops = [CasOp(f"k{i}", new_version(), stored(new_version())) for i in range(20)]
    assert writer.compare_and_set_many(ops) == set()
    assert round_trips == [("pipeline", 20)]


def test_lua_batch_loads_script_when_server_lost_it(r, round_trips):
    writer = LuaConditionalWriter(r)
    v1 = new_version()
    r.set("a", stored(v1))
    r.script_flush()

    round_trips.clear()
    ops = [
        CasOp("a", v1, stored(new_version(), b"A")),
        CasOp("b", new_version(), stored(new_version(), b"B")),
    ]
    assert writer.compare_and_set_many(ops) == {"a"}
    assert round_trips == [("pipeline", 2), ("command", "SCRIPT LOAD"), ("pipeline", 2)]
    assert r.get("a").endswith(b"A")
    assert not r.exists("b")


def test_lua_batch_raises_script_errors(r):
    writer = LuaConditionalWriter(r)
    r.rpush("listy", "not a string")
    with pytest.raises(redis.ResponseError):
        writer.compare_and_set_many([CasOp("listy", new_version(), stored(new_version()))])
