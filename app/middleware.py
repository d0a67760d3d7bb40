import json
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One JSON log line per request."""

    def __init__(self, app, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.logger = logger or logging.getLogger("app.access")

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            return response
        finally:
            self.logger.info(json.dumps({
                "ts": int(time.time() * 1000),
                "ip": (request.client.host if request.client else None) or "",
                "method": request.method,
                "path": request.url.path,
                "status": status,
                "duration_ms": int((time.time() - start) * 1000),
            }))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window limit per client IP on the listed (method, path) pairs."""

    def __init__(self, app, max_requests: int = 30, window_seconds: int = 60,
                 limited: Iterable[Tuple[str, str]] = (("POST", "/api/chat"),)):
        super().__init__(app)
        self.max_requests = int(max_requests)
        self.window = int(window_seconds)
        self.limited = {(m.upper(), p) for m, p in limited}
        self.buckets: Dict[str, List[float]] = {}
        self.lock = threading.Lock()

    def _allow(self, ip: str, now: float) -> bool:
        cutoff = now - self.window
        with self.lock:
            bucket = [t for t in self.buckets.get(ip, []) if t >= cutoff]
            allowed = len(bucket) < self.max_requests
            if allowed:
                bucket.append(now)
            if bucket:
                self.buckets[ip] = bucket
            else:
                self.buckets.pop(ip, None)
        return allowed

    async def dispatch(self, request: Request, call_next):
        if self.max_requests <= 0 or (request.method, request.url.path) not in self.limited:
            return await call_next(request)
        ip = (request.client.host if request.client else "") or ""
        if not self._allow(ip, time.time()):
            return JSONResponse({"error": "rate_limited"}, status_code=429)
        return await call_next(request)
