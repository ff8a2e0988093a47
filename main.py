# main.py
"""
FastAPI entry point for the NutriZen API.
Startup database check, request-id middleware, CORS and per-domain routers.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nutrizen.api.admin import router as admin_router
from nutrizen.api.ai import router as ai_router
from nutrizen.api.billing import router as billing_router
from nutrizen.api.credits import router as credits_router
from nutrizen.api.emails import router as emails_router
from nutrizen.api.errors import register_exception_handlers
from nutrizen.api.gamification import router as gamification_router
from nutrizen.api.intake import router as intake_router
from nutrizen.api.jobs import router as jobs_router
from nutrizen.api.menus import router as menus_router
from nutrizen.api.onboarding import router as onboarding_router
from nutrizen.api.pinterest import router as pinterest_router
from nutrizen.api.referrals import router as referrals_router
from nutrizen.config.logging_config import configure_logging
from nutrizen.config.settings import settings
from nutrizen.config.supabase import supabase_client

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger("uvicorn.error")

HEALTH_CHECK_TIMEOUT = float(os.getenv("HEALTH_CHECK_TIMEOUT", "5.0"))
FAIL_ON_DB_STARTUP = os.getenv("FAIL_ON_DB_STARTUP", "false").lower() in ("1", "true", "yes")


async def _run_sync_in_executor(fn, *args, timeout: float = HEALTH_CHECK_TIMEOUT):
    """Run a blocking callable in the default threadpool, bounded by `timeout`."""
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(None, fn, *args), timeout=timeout)


async def _database_healthy(timeout: float = HEALTH_CHECK_TIMEOUT) -> bool:
    try:
        return bool(await _run_sync_in_executor(supabase_client.health_check, timeout=timeout))
    except asyncio.TimeoutError:
        logger.warning("Supabase health_check timed out after %.1fs", timeout)
    except Exception as exc:
        logger.exception("Supabase health_check raised: %s", exc)
    return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting NutriZen API...")
    app.state.supabase_healthy = await _database_healthy()
    logger.info("Supabase health: %s", app.state.supabase_healthy)

    if not app.state.supabase_healthy and FAIL_ON_DB_STARTUP:
        logger.error("FAIL_ON_DB_STARTUP enabled and Supabase unhealthy. Aborting startup.")
        raise RuntimeError("Supabase unhealthy on startup")

    yield
    logger.info("Shutting down NutriZen API...")


app = FastAPI(
    title="NutriZen API",
    description="Meal planning backend: menus, credits, onboarding, gamification and automation jobs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-request-id"],
)

register_exception_handlers(app)


@app.middleware("http")
async def add_request_id_and_log(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    logger.info("→ Incoming request %s %s id=%s", request.method, request.url.path, request_id)
    try:
        response: Response = await call_next(request)
    except Exception as exc:
        logger.exception("Handler error for request id=%s: %s", request_id, exc)
        return JSONResponse(
            {"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
            status_code=500,
            headers={"X-Request-Id": request_id},
        )
    logger.info("← Completed request id=%s status=%s", request_id, response.status_code)
    response.headers["X-Request-Id"] = request_id
    return response


app.include_router(credits_router, prefix="/api/credits", tags=["credits"])
app.include_router(onboarding_router, prefix="/api/onboarding", tags=["onboarding"])
app.include_router(jobs_router, prefix="/api/jobs", tags=["jobs"])
app.include_router(menus_router, prefix="/api/menus", tags=["menus"])
app.include_router(gamification_router, prefix="/api/gamification", tags=["gamification"])
app.include_router(ai_router, prefix="/api/ai", tags=["ai"])
app.include_router(intake_router, prefix="/api/intake", tags=["intake"])
app.include_router(referrals_router, prefix="/api/referrals", tags=["referrals"])
app.include_router(emails_router, prefix="/api/emails", tags=["emails"])
app.include_router(pinterest_router, prefix="/api/pinterest", tags=["pinterest"])
app.include_router(billing_router, prefix="/api/billing", tags=["billing"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])


@app.get("/")
async def root() -> Dict[str, str]:
    return {"message": "NutriZen API is running!", "status": "healthy"}


@app.get("/health")
async def health_check():
    """Liveness with a bounded database check; 503 when the database is down."""
    db_ok = await _database_healthy()
    return JSONResponse(
        {
            "status": "healthy" if db_ok else "degraded",
            "service": "nutrizen-api",
            "database": "connected" if db_ok else "disconnected",
        },
        status_code=200 if db_ok else 503,
    )


@app.get("/ready")
async def readiness_check():
    """Readiness from the startup check, re-run once if startup never ran."""
    supabase_state: Optional[bool] = getattr(app.state, "supabase_healthy", None)
    if supabase_state is None:
        supabase_state = await _database_healthy(timeout=2.0)

    if supabase_state:
        return JSONResponse({"ready": True, "database": "connected"}, status_code=200)
    return JSONResponse({"ready": False, "database": "disconnected"}, status_code=503)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 5000)), reload=True)
