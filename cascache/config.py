import os

def getenv(key: str, default: str) -> str:
    val = os.getenv(key)
    return val if val is not None and val != "" else default

REDIS_URL = getenv("REDIS_URL", "redis://localhost:6379/0")

CACHE_NAMESPACE = getenv("CACHE_NAMESPACE", "")
CACHE_CODEC = getenv("CACHE_CODEC", "json")
CACHE_MAX_CONNECTIONS = int(getenv("CACHE_MAX_CONNECTIONS", "50"))
CACHE_SOCKET_TIMEOUT = float(getenv("CACHE_SOCKET_TIMEOUT", "5.0"))

SERVICE_NAME = getenv("SERVICE_NAME", "cache_service")
