from fastapi import FastAPI, Request
from sales_monitor.auth import router as auth_router
from sales_monitor.insights import router as insights_router
from sales_monitor.products import router as products_router
from sales_monitor.mail_settings import router as settings_router
from sales_monitor.admin import router as admin_router
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import os
import time

from sales_monitor.bootstrap import ensure_core_schema

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")

app = FastAPI(title="Sales Monitoring API")


# Middleware to add no-cache headers for HTML files
class NoCacheHTMLMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        path = request.url.path

        if path.endswith(".html") or path == "/":
            response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate, max-age=0"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"
            response.headers["ETag"] = f'"{int(time.time())}"'

        return response


def _allowed_origins():
    raw = os.getenv("ALLOWED_ORIGINS", "http://localhost:8000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app.add_middleware(NoCacheHTMLMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"message": "Sales Monitoring API is running"}

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(insights_router, prefix="/insights", tags=["insights"])
app.include_router(products_router, prefix="/products", tags=["products"])
app.include_router(settings_router, prefix="/settings", tags=["settings"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])

app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="static")


@app.on_event("startup")
def _bootstrap_core_schema() -> None:
    """Create or upgrade the shared account tables when the core database is reachable."""

    ensure_core_schema()
