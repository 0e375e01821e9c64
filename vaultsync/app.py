from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request

from vaultsync.api.error_handling import register_exception_handlers
from vaultsync.api.routes import identity_router, public_router, router
from vaultsync.config import Settings
from vaultsync.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from vaultsync.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.secret_problem:
        logger.error(
            "startup_signing_key_unsafe",
            reason=runtime.settings.secret_problem,
            message="Authenticated routes will answer 500 until JWT_SECRET is fixed.",
        )
    yield
    close = getattr(runtime.store, "close", None)
    if close is not None:
        close()
        logger.info("runtime_store_closed")


app = FastAPI(title="vaultsync", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the caller's ``X-Request-ID`` (or a new one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    path = request.url.path
    if path.startswith(("/api/", "/identity/")) or path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(identity_router)
app.include_router(public_router)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Store and filesystem probes, each bounded by a timeout."""
    from vaultsync.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout",
                component=label,
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_probe() -> None:
        if not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    return {
        "status": "healthy" if db_ok and fs_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "signing_key_configured": runtime.settings.secret_problem is None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
