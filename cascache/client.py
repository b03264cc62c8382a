"""Redis cache client with compare-and-swap writes.

Reads hand out IdentifiableValues; a later put_if_untouched only lands if the
entry still carries the version that was read. No locks are taken anywhere,
so any number of processes can share the same keys.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Set

import redis

from cascache import config
from cascache.codec import IdentifiableValue, JsonCodec, PayloadCodec, decode_entry, encode_entry, get_codec
from cascache.metrics import CAS_RESULTS, LOOKUPS, OP_LATENCY, WRITES
from cascache.writer import CasOp, ConditionalWriter, LuaConditionalWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CasPut:
    """Replace the entry `iv` was read from with `next_value`.

    ttl_seconds = 0 means the new entry never expires.
    """

    iv: IdentifiableValue
    next_value: Any
    ttl_seconds: int = 0

    def __post_init__(self):
        if self.ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {self.ttl_seconds}")


class RedisCasCache:
    def __init__(
        self,
        pool: redis.ConnectionPool,
        codec: Optional[PayloadCodec] = None,
        namespace: str = "",
        writer_factory: Callable[[redis.Redis], ConditionalWriter] = LuaConditionalWriter,
    ):
        if pool.connection_kwargs.get("decode_responses"):
            raise ValueError("connection pool must not decode responses; entries are binary")
        self.pool = pool
        self.codec = codec or JsonCodec()
        self.ns = namespace
        self.r = redis.Redis(connection_pool=pool)
        self.writer = writer_factory(self.r)
        self._owns_pool = False

    @classmethod
    def from_url(
        cls,
        url: str = config.REDIS_URL,
        max_connections: int = config.CACHE_MAX_CONNECTIONS,
        socket_timeout: float = config.CACHE_SOCKET_TIMEOUT,
        **kwargs,
    ) -> "RedisCasCache":
        pool = redis.ConnectionPool.from_url(url, max_connections=max_connections, socket_timeout=socket_timeout)
        return cls._owning(pool, **kwargs)

    @classmethod
    def from_host(cls, host: str, port: int = 6379, **kwargs) -> "RedisCasCache":
        pool = redis.ConnectionPool(
            host=host,
            port=port,
            max_connections=config.CACHE_MAX_CONNECTIONS,
            socket_timeout=config.CACHE_SOCKET_TIMEOUT,
        )
        return cls._owning(pool, **kwargs)

    @classmethod
    def from_config(cls) -> "RedisCasCache":
        return cls.from_url(codec=get_codec(config.CACHE_CODEC), namespace=config.CACHE_NAMESPACE)

    @classmethod
    def _owning(cls, pool: redis.ConnectionPool, **kwargs) -> "RedisCasCache":
        cache = cls(pool, **kwargs)
        cache._owns_pool = True
        return cache

    def close(self) -> None:
        """Disconnect the pool if this client created it.

        An injected pool belongs to the caller and is left alone.
        """
        if self._owns_pool:
            self.pool.disconnect()

    def __enter__(self) -> "RedisCasCache":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _k(self, key: str) -> str:
        return f"{self.ns}:{key}" if self.ns else key

    def _fetch(self, op: str, keys: Iterable[str]) -> Dict[str, Optional[IdentifiableValue]]:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}
        blobs = self.r.mget([self._k(k) for k in keys])
        found = {}
        for key, blob in zip(keys, blobs):
            iv = decode_entry(blob, self.codec)
            LOOKUPS.labels(op, "miss" if iv is None else "hit").inc()
            found[key] = iv
        return found

    def _store(self, op: str, entries: Mapping[str, bytes]) -> None:
        if not entries:
            return
        self.r.mset({self._k(k): entry for k, entry in entries.items()})
        WRITES.labels(op).inc(len(entries))

    def get_identifiable(self, key: str) -> Optional[IdentifiableValue]:
        """Read one entry with its version, or None if it is absent.

        Unlike get_identifiables nothing is reserved, so a stored None value
        and a missing key stay distinguishable.
        """
        with OP_LATENCY.labels("get").time():
            iv = decode_entry(self.r.get(self._k(key)), self.codec)
        LOOKUPS.labels("get", "miss" if iv is None else "hit").inc()
        return iv

    def get(self, key: str) -> Any:
        iv = self.get_identifiable(key)
        return None if iv is None else iv.value

    def get_all(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Fetch many keys in one MGET, in the order they were given.

        Every requested key is present in the result; missing or unreadable
        entries map to None.
        """
        with OP_LATENCY.labels("get_all").time():
            found = self._fetch("get_all", keys)
        return {key: None if iv is None else iv.value for key, iv in found.items()}

    def get_identifiables(self, keys: Iterable[str]) -> Dict[str, IdentifiableValue]:
        """Fetch many keys with the version each was read at.

        Keys that are not in Redis get a placeholder (value None, fresh
        version) which is written back before returning, so that creating
        the key later goes through put_if_untouched like any update. Two
        readers reserving the same missing key race: the last reservation
        wins and the other reader's CAS will fail.
        """
        with OP_LATENCY.labels("get_identifiables").time():
            found = self._fetch("get_identifiables", keys)
            reserved = {key: IdentifiableValue.create(None) for key, iv in found.items() if iv is None}
            self._store("reserve", {key: iv.to_entry(self.codec) for key, iv in reserved.items()})
        if reserved:
            logger.debug("Reserved %d missing keys", len(reserved))
        return {key: reserved.get(key, iv) for key, iv in found.items()}

    def put(self, key: str, value: Any) -> None:
        with OP_LATENCY.labels("put").time():
            self.r.set(self._k(key), encode_entry(value, self.codec))
        WRITES.labels("put").inc()

    def put_all(self, values: Mapping[str, Any]) -> None:
        with OP_LATENCY.labels("put_all").time():
            self._store("put_all", {key: encode_entry(value, self.codec) for key, value in values.items()})

    def put_if_untouched(self, puts: Mapping[str, CasPut]) -> Set[str]:
        """Write each value only if its key still has the version it was read at.

        All checks go to Redis in one round trip. Each key is atomic on its
        own; the batch is not, so some keys may succeed while others fail.
        Returns the keys that were written.
        """
        if not puts:
            return set()
        ops = [
            CasOp(self._k(key), put.iv.version, encode_entry(put.next_value, self.codec), put.ttl_seconds)
            for key, put in puts.items()
        ]
        with OP_LATENCY.labels("put_if_untouched").time():
            applied = self.writer.compare_and_set_many(ops)
        ok = {key for key in puts if self._k(key) in applied}
        CAS_RESULTS.labels("success").inc(len(ok))
        CAS_RESULTS.labels("conflict").inc(len(puts) - len(ok))
        return ok

    def delete(self, key: str) -> None:
        with OP_LATENCY.labels("delete").time():
            self.r.delete(self._k(key))

    def delete_all(self, keys: Iterable[str]) -> None:
        redis_keys = [self._k(k) for k in keys]
        if not redis_keys:
            return
        with OP_LATENCY.labels("delete_all").time():
            self.r.delete(*redis_keys)
