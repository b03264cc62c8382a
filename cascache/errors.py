class CacheError(Exception):
    """Base class for cache client errors."""


class DecodingError(CacheError):
    """Stored bytes could not be turned back into a value.

    Never escapes the read path: readers log it and report a miss.
    """
