import time

import redis
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from cascache.client import CasPut, RedisCasCache
from cascache.codec import IdentifiableValue
from cascache.config import SERVICE_NAME
from cascache.metrics import REQ_LATENCY, REQ_COUNT
from cascache.models import (
    CasRequest, CasResult, IdentifiableItem, KeysRequest, ValueRequest, ValuesRequest, ValueResponse,
)

app = FastAPI(title="CAS Cache Service", version="1.0")

cache = RedisCasCache.from_config()

@app.on_event("shutdown")
def on_shutdown():
    cache.close()

@app.middleware("http")
async def record_metrics(request: Request, call_next):
    t0 = time.time()
    status_code = "500"
    try:
        response = await call_next(request)
        status_code = str(response.status_code)
        return response
    finally:
        route = request.scope.get("route")
        endpoint = route.path if route is not None else request.url.path
        dt = time.time() - t0
        REQ_LATENCY.labels(SERVICE_NAME, endpoint, request.method, status_code).observe(dt)
        REQ_COUNT.labels(SERVICE_NAME, endpoint, request.method, status_code).inc()

@app.exception_handler(redis.ConnectionError)
@app.exception_handler(redis.TimeoutError)
async def redis_unavailable(request: Request, exc: redis.RedisError):
    return JSONResponse({"error": f"redis unavailable: {exc}"}, status_code=503)

@app.get("/status")
def status():
    return {"service": SERVICE_NAME, "namespace": cache.ns, "codec": cache.codec.name}

@app.get("/cache/{key}", response_model=ValueResponse)
def get_value(key: str):
    iv = cache.get_identifiable(key)
    if iv is None:
        return JSONResponse({"error": "not found", "key": key}, status_code=404)
    return ValueResponse(key=key, value=iv.value)

@app.put("/cache/{key}")
def put_value(key: str, req: ValueRequest):
    cache.put(key, req.value)
    return {"ok": True}

@app.delete("/cache/{key}")
def delete_value(key: str):
    cache.delete(key)
    return {"ok": True}

@app.post("/cache/get_all")
def get_all(req: KeysRequest):
    return {"values": cache.get_all(req.keys)}

@app.post("/cache/put_all")
def put_all(req: ValuesRequest):
    cache.put_all(req.values)
    return {"ok": True}

@app.post("/cache/delete_all")
def delete_all(req: KeysRequest):
    cache.delete_all(req.keys)
    return {"ok": True}

@app.post("/cache/identifiables")
def identifiables(req: KeysRequest):
    ivs = cache.get_identifiables(req.keys)
    items = {key: IdentifiableItem(value=iv.value, version=iv.version.hex()) for key, iv in ivs.items()}
    return {"items": items}

@app.post("/cache/put_if_untouched", response_model=CasResult)
def put_if_untouched(req: CasRequest):
    puts = {
        key: CasPut(IdentifiableValue(None, bytes.fromhex(item.version)), item.value, item.ttl_seconds)
        for key, item in req.puts.items()
    }
    ok = cache.put_if_untouched(puts)
    return CasResult(
        succeeded=[k for k in req.puts if k in ok],
        failed=[k for k in req.puts if k not in ok],
    )

@app.get("/metrics")
def metrics():
    return HTMLResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
