import asyncio
import json
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Endpoints soportados y la clave de éxito esperada en el JSON
ALLOW = {
    "/till/checkout": "sale_id",
}

HEADER = "x-idempotency-key"


class _Cache:
    def __init__(self, ttl=3600, max_entries=2048):
        self.ttl = ttl
        self.max_entries = max_entries
        self._store = {}
        self._lock = asyncio.Lock()

    async def get(self, key):
        async with self._lock:
            item = self._store.get(key)
            if not item:
                return None
            if item["exp"] < time.time():
                self._store.pop(key, None)
                return None
            return item

    async def set(self, key, val):
        async with self._lock:
            if len(self._store) >= self.max_entries:
                self._store.pop(next(iter(self._store)))
            self._store[key] = {**val, "exp": time.time() + self.ttl}


class _KeyedLocks:
    """Un lock por llave; la entrada se borra cuando nadie la usa ni la espera."""

    def __init__(self):
        self._locks = {}
        self._users = {}
        self._guard = asyncio.Lock()

    async def acquire(self, key):
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            await self._forget(key)
            raise
        return lock

    async def release(self, key):
        self._locks[key].release()
        await self._forget(key)

    async def _forget(self, key):
        async with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


def _drop_content_length(headers: dict) -> dict:
    # Quita cualquier Content-Length (casing-insensitive)
    return {k: v for k, v in headers.items() if k.lower() != "content-length"}


def _replay(cached: dict) -> Response:
    body = cached["body"]
    try:
        js = json.loads(body.decode("utf-8"))
    except ValueError:
        js = None
    if isinstance(js, dict):
        js.setdefault("replay", True)
        body = json.dumps(js).encode("utf-8")
    headers = _drop_content_length(dict(cached["headers"]))
    headers["Idempotent-Replay"] = "true"
    return Response(content=body, status_code=cached["status"], media_type=cached["media_type"], headers=headers)


class CheckoutIdempotency(BaseHTTPMiddleware):
    """
    Un doble toque en "Submit" con la misma llave no cobra dos veces:
    la segunda petición espera a la primera y recibe su respuesta.
    Solo se cachean respuestas 200 que traen la clave de éxito.
    """

    def __init__(self, app, ttl: int = 3600):
        super().__init__(app)
        self.cache = _Cache(ttl=ttl)
        self.locks = _KeyedLocks()

    async def dispatch(self, request, call_next):
        if request.method != "POST":
            return await call_next(request)

        path = request.url.path
        success_key = ALLOW.get(path)
        if not success_key:
            return await call_next(request)

        idem_key = request.headers.get(HEADER)
        if not idem_key:
            return await call_next(request)

        cache_key = f"{request.method}:{path}:{idem_key}"

        cached = await self.cache.get(cache_key)
        if cached:
            return _replay(cached)

        # Sección crítica por clave
        await self.locks.acquire(cache_key)
        try:
            cached = await self.cache.get(cache_key)
            if cached:
                return _replay(cached)

            response = await call_next(request)
            body = b""
            async for chunk in response.body_iterator:
                body += chunk

            headers = _drop_content_length(dict(response.headers))
            new_resp = Response(
                content=body,
                status_code=response.status_code,
                media_type=response.media_type,
                headers=headers,
            )

            should_cache = response.status_code == 200
            if should_cache:
                try:
                    js = json.loads(body.decode("utf-8"))
                except ValueError:
                    js = None
                should_cache = isinstance(js, dict) and success_key in js

            if should_cache:
                await self.cache.set(
                    cache_key,
                    {
                        "status": new_resp.status_code,
                        "headers": dict(new_resp.headers),
                        "media_type": new_resp.media_type,
                        "body": body,
                    },
                )
            return new_resp
        finally:
            await self.locks.release(cache_key)


def install_idempotency(app):
    app.add_middleware(CheckoutIdempotency)
