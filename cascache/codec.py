"""Versioned value encoding for cache entries.

Every stored entry is a 16 byte random version token followed by the
serialized payload:

    entry = version (16 bytes) || payload

The token is regenerated on every write. It is an opaque fingerprint used to
answer "has anyone written since I read this", not a counter, so it carries
no ordering. Keeping it first and fixed-width lets the Lua check-and-set
compare versions without touching the payload.
"""

import json
import logging
import pickle
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from cascache.errors import DecodingError
from cascache.metrics import DECODE_ERRORS

logger = logging.getLogger(__name__)

VERSION_SIZE = 16


def new_version() -> bytes:
    return uuid.uuid4().bytes


class PayloadCodec(Protocol):
    name: str

    def encode(self, value: Any) -> bytes:
        ...

    def decode(self, data: bytes) -> Any:
        """Raise DecodingError if data is not a valid payload."""
        ...


class PickleCodec:
    """Stores arbitrary Python objects.

    Decoding runs pickle.loads on whatever is in Redis, which can execute
    code. Only use it when every client that can write to the Redis
    instance is trusted.
    """

    name = "pickle"

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def encode(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=self.protocol)

    def decode(self, data: bytes) -> Any:
        try:
            return pickle.loads(data)
        except Exception as e:
            raise DecodingError(f"invalid pickle payload: {e}") from e


class JsonCodec:
    name = "json"

    def encode(self, value: Any) -> bytes:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        try:
            return json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodingError(f"invalid json payload: {e}") from e


CODECS = {
    PickleCodec.name: PickleCodec,
    JsonCodec.name: JsonCodec,
}


def get_codec(name: str) -> PayloadCodec:
    try:
        return CODECS[name]()
    except KeyError:
        raise ValueError(f"Unknown payload codec: {name}") from None


@dataclass(frozen=True)
class IdentifiableValue:
    """A value as last observed, with proof of the version it was read at.

    Returned by reads and handed back in a CasPut. Only `value` is meant
    for callers; `version` is opaque.
    """

    value: Any
    version: bytes

    @classmethod
    def create(cls, value: Any) -> "IdentifiableValue":
        return cls(value=value, version=new_version())

    def to_entry(self, codec: PayloadCodec) -> bytes:
        return self.version + codec.encode(self.value)


def encode_entry(value: Any, codec: PayloadCodec) -> bytes:
    return IdentifiableValue.create(value).to_entry(codec)


def version_of(entry: bytes) -> bytes:
    if len(entry) < VERSION_SIZE:
        raise DecodingError(f"entry too short for a version: {len(entry)} bytes")
    return entry[:VERSION_SIZE]


def decode_entry(entry: Optional[bytes], codec: PayloadCodec) -> Optional[IdentifiableValue]:
    """Decode a stored entry, or None if it is missing or unreadable.

    A corrupt entry is logged and reported like a missing key so that a bad
    cache value degrades to a miss instead of an outage.
    """
    if not entry:
        return None
    try:
        version = version_of(entry)
        value = codec.decode(entry[VERSION_SIZE:])
    except DecodingError:
        DECODE_ERRORS.inc()
        logger.exception("Error deserializing cache entry (%d bytes)", len(entry))
        return None
    return IdentifiableValue(value=value, version=version)
