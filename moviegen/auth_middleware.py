"""
Shared-secret authentication for the worker.

Mutating /movies/* endpoints (generate, cancel) require an X-Worker-Secret
header equal to WORKER_SHARED_SECRET. The web app attaches it when it
forwards a request. Progress reads and /health stay public.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

SECRET_HEADER = "X-Worker-Secret"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    PROTECTED_PREFIX = "/movies"

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self.secret = secret
        self.environment = environment

    async def dispatch(self, request: Request, call_next):
        if request.method in ("GET", "HEAD", "OPTIONS") or not request.url.path.startswith(self.PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # No secret in development: allow everything
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
