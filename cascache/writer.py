"""Conditional writes: replace an entry only if its version is unchanged.

The contract, per key, is:

    current = GET key
    if current[0:16] == expected_version:
        SET key new_entry [EX ttl]
        -> success
    else:
        -> no mutation, failure

The check and the set must be atomic inside Redis. LuaConditionalWriter does
it with a server-side script and pipelines a whole batch into one round trip.
WatchConditionalWriter does it with WATCH/MULTI/EXEC, one key at a time.
A batch is never a multi-key transaction: each key passes or fails alone.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Protocol, Set

import redis
from redis.exceptions import NoScriptError

from cascache.codec import VERSION_SIZE

logger = logging.getLogger(__name__)

CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and string.sub(current, 1, 16) == ARGV[1] then
    if ARGV[3] then
        redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
    else
        redis.call('SET', KEYS[1], ARGV[2])
    end
    return 1
end
return false
"""

CAS_OK = 1


@dataclass(frozen=True)
class CasOp:
    key: str
    expected_version: bytes
    entry: bytes
    ttl_seconds: int = 0


class ConditionalWriter(Protocol):
    def try_compare_and_set(self, key: str, expected_version: bytes, new_entry: bytes, ttl_seconds: int = 0) -> bool:
        ...

    def compare_and_set_many(self, ops: Iterable[CasOp]) -> Set[str]:
        """Return the keys whose write was applied."""
        ...


def _script_args(op: CasOp) -> list:
    args = [op.expected_version, op.entry]
    if op.ttl_seconds > 0:
        # EX wants the number as text
        args.append(str(op.ttl_seconds))
    return args


class LuaConditionalWriter:
    def __init__(self, client: redis.Redis):
        self.client = client
        self.script = client.register_script(CAS_SCRIPT)

    def try_compare_and_set(self, key: str, expected_version: bytes, new_entry: bytes, ttl_seconds: int = 0) -> bool:
        op = CasOp(key, expected_version, new_entry, ttl_seconds)
        return self.script(keys=[op.key], args=_script_args(op), client=self.client) == CAS_OK

    def _run(self, ops: List[CasOp]) -> Dict[str, Any]:
        # EVALSHA straight on the pipeline: one round trip, no SCRIPT EXISTS first
        with self.client.pipeline(transaction=False) as pipe:
            for op in ops:
                pipe.evalsha(self.script.sha, 1, op.key, *_script_args(op))
            results = pipe.execute(raise_on_error=False)
        return {op.key: res for op, res in zip(ops, results)}

    def compare_and_set_many(self, ops: Iterable[CasOp]) -> Set[str]:
        ops = list(ops)
        if not ops:
            return set()
        results = self._run(ops)
        unloaded = [op for op in ops if isinstance(results[op.key], NoScriptError)]
        if unloaded:
            # NOSCRIPT replies never ran, so only those keys are sent again
            logger.debug("CAS script not cached by server, loading it")
            self.client.script_load(CAS_SCRIPT)
            results.update(self._run(unloaded))
        for op in ops:
            if isinstance(results[op.key], Exception):
                raise results[op.key]
        ok = {op.key for op in ops if results[op.key] == CAS_OK}
        logger.debug("CAS batch: %d/%d applied", len(ok), len(ops))
        return ok


class WatchConditionalWriter:
    """Optimistic transaction per key using WATCH/MULTI/EXEC.

    Losing a WATCH race means someone wrote the key after we compared, which
    is reported as a failed CAS. Retrying is left to the caller.
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    def try_compare_and_set(self, key: str, expected_version: bytes, new_entry: bytes, ttl_seconds: int = 0) -> bool:
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(key)
                current = pipe.get(key)
                if current is None or current[:VERSION_SIZE] != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if ttl_seconds > 0:
                    pipe.set(key, new_entry, ex=ttl_seconds)
                else:
                    pipe.set(key, new_entry)
                pipe.execute()
                return True
            except redis.WatchError:
                logger.debug("WATCH lost on %r", key)
                return False

    def compare_and_set_many(self, ops: Iterable[CasOp]) -> Set[str]:
        return {
            op.key
            for op in ops
            if self.try_compare_and_set(op.key, op.expected_version, op.entry, op.ttl_seconds)
        }
