import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api import exports
from app.config import settings
from app.services.expiry_reaper import ExpiryReaper

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

expiry_reaper = ExpiryReaper()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the export expiry reaper for the lifetime of the app."""
    if settings.export_reaper_enabled:
        expiry_reaper.start()
    try:
        yield
    finally:
        await expiry_reaper.stop()


app = FastAPI(title="Workout Tracker Exports", version="0.1.0", lifespan=lifespan)


# =============================================================================
# Session origin check
# =============================================================================


class SessionOriginMiddleware(BaseHTTPMiddleware):
    """
    Reject cross-site writes that would ride on the session cookie.

    Unsafe requests (today only POST /udata/export) must carry an Origin
    header, or failing that a Referer, naming either the request's own host
    or the host of settings.public_base_url, where the tracker frontend and
    the emailed download links live. The capability download is a GET and
    needs no session, so it is never checked.
    """

    SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
    EXEMPT_PATHS = {"/health"}

    @staticmethod
    def allowed_hosts(request: Request) -> set:
        hosts = {request.headers.get("host", "")}
        public_host = urlparse(settings.public_base_url).netloc
        if public_host:
            hosts.add(public_host)
        return hosts

    async def dispatch(self, request: Request, call_next):
        if request.method in self.SAFE_METHODS or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        source = request.headers.get("origin") or request.headers.get("referer")
        if source is None:
            logger.warning("Rejected %s %s without Origin or Referer", request.method, request.url.path)
        elif urlparse(source).netloc not in self.allowed_hosts(request):
            logger.warning("Rejected %s %s from foreign origin %s", request.method, request.url.path, source)
        else:
            return await call_next(request)

        return JSONResponse(status_code=403, content={"detail": "Origin validation failed"})


app.add_middleware(SessionOriginMiddleware)


# Include routers
app.include_router(exports.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
