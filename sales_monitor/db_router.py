"""Per-tenant database routing.

Each account on ``myusers`` points at its own POS database through a
``project_url`` (an SQLAlchemy URL) and a ``project_key`` credential. Engines
are cached per resolved URL so repeated report requests reuse one pool.
"""

from collections import OrderedDict
from typing import Any, Dict, Optional
import atexit
import logging
import os
import threading
import time

from fastapi import HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError

_logger = logging.getLogger(__name__)

# Engine cache to reuse engines per database connection string
_engine_cache: "OrderedDict[str, Engine]" = OrderedDict()
_engine_lock = threading.Lock()

_MAX_CACHED_ENGINES = int(os.getenv("SALES_MONITOR_MAX_CACHED_ENGINES", "10"))
_POOL_SIZE = int(os.getenv("SALES_MONITOR_POOL_SIZE", "5"))
_POOL_MAX_OVERFLOW = int(os.getenv("SALES_MONITOR_POOL_MAX_OVERFLOW", "10"))
_POOL_TIMEOUT = int(os.getenv("SALES_MONITOR_POOL_TIMEOUT", "30"))
_POOL_RECYCLE = int(os.getenv("SALES_MONITOR_POOL_RECYCLE", "1200"))
_CONNECT_TIMEOUT = int(os.getenv("SALES_MONITOR_CONNECT_TIMEOUT", "10"))
_SLOW_QUERY_THRESHOLD = float(
    os.getenv("SALES_MONITOR_SLOW_QUERY_THRESHOLD", "2.0")
)  # seconds


def select_project(user: dict) -> Dict[str, str]:
    """Return the tenant credentials carried by an authenticated session."""
    project_url = user.get("project_url")
    project_key = user.get("project_key")
    if not project_url or not project_key:
        raise HTTPException(
            status_code=403, detail="No project database associated with this account"
        )
    return {"project_url": project_url, "project_key": project_key}


def resolve_url(project_url: str, project_key: Optional[str]):
    """Build the connection URL, using the key as password when none is embedded."""
    try:
        url = make_url(project_url)
    except ArgumentError:
        raise HTTPException(status_code=400, detail="Invalid project database URL")

    if project_key and url.password is None and url.get_backend_name() != "sqlite":
        url = url.set(password=project_key)
    return url


def _engine_options(url) -> Dict[str, Any]:
    backend = url.get_backend_name()
    if backend == "sqlite":
        return {}

    options: Dict[str, Any] = {
        "pool_size": _POOL_SIZE,
        "max_overflow": _POOL_MAX_OVERFLOW,
        "pool_recycle": _POOL_RECYCLE,
        "pool_pre_ping": True,
        "pool_timeout": _POOL_TIMEOUT,
    }
    if backend in ("mysql", "postgresql"):
        options["connect_args"] = {"connect_timeout": _CONNECT_TIMEOUT}
    return options


def get_tenant_engine(project_url: str, project_key: Optional[str]) -> Engine:
    """
    Get or create the engine for a tenant database.
    Least-recently-used engines are disposed once the cache is full.
    """
    url = resolve_url(project_url, project_key)
    cache_key = url.render_as_string(hide_password=False)

    with _engine_lock:
        engine = _engine_cache.get(cache_key)
        if engine is not None:
            _engine_cache.move_to_end(cache_key)
            return engine

        if _MAX_CACHED_ENGINES > 0 and len(_engine_cache) >= _MAX_CACHED_ENGINES:
            _, oldest_engine = _engine_cache.popitem(last=False)
            oldest_engine.dispose()

        engine = create_engine(url, echo=False, **_engine_options(url))
        _engine_cache[cache_key] = engine
    _logger.info("Created tenant engine for %s", url.render_as_string(hide_password=True))
    return engine


def engine_for_user(user: dict) -> Engine:
    project = select_project(user)
    return get_tenant_engine(project["project_url"], project["project_key"])


def dispose_engines() -> None:
    with _engine_lock:
        for engine in _engine_cache.values():
            engine.dispose()
        _engine_cache.clear()


atexit.register(dispose_engines)


def execute_with_timing(conn, query, params=None, query_name="query"):
    """
    Execute a query with timing and log slow queries for performance monitoring.
    """
    start_time = time.time()
    try:
        result = conn.execute(query if not isinstance(query, str) else text(query), params or {})
    except Exception as e:
        execution_time = time.time() - start_time
        _logger.error(
            "QUERY ERROR after %.2fs: %s\nQuery: %s...\nError: %s",
            execution_time,
            query_name,
            str(query)[:200],
            e,
        )
        raise

    execution_time = time.time() - start_time
    if execution_time > _SLOW_QUERY_THRESHOLD:
        _logger.warning(
            "SLOW QUERY detected: %s took %.2fs\nQuery: %s...\nParams: %s",
            query_name,
            execution_time,
            str(query)[:200],
            params,
        )
    return result
