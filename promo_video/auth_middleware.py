"""
Shared-secret authentication middleware for the video worker.

Job and video endpoints require an X-Worker-Secret header matching the
configured WORKER_SHARED_SECRET. The dashboard backend attaches this header
when forwarding requests; end-user auth happens there, not here.
"""

import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIXES = ("/jobs", "/videos")


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /jobs/* and /videos/*."""

    def __init__(self, app, secret: str = "", environment: str = "development"):
        super().__init__(app)
        self._secret = secret
        self._environment = environment

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Health, metrics and docs stay public
        if not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        if not self._secret:
            # In development without the secret set, allow all traffic
            if self._environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self._secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
