# placekeeper/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from placekeeper.config import settings, validate_settings
from placekeeper.core.db import init_db, close_db
from placekeeper.core.errors import register_exception_handlers
from placekeeper.core.rate_limit import rate_limiter
from placekeeper.core.bootstrap import ensure_default_admin

from placekeeper.api.v1.routers import auth, password, account, admin

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title=settings.APP_NAME)

# CORS (with Cookie)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.on_event("startup")
async def on_startup():
    # Missing/weak signing secret is fatal unless ENV=test
    validate_settings()
    await init_db(generate_schemas=settings.db_generate_schemas)
    # Ensure there's a default admin account on first run
    await ensure_default_admin()
    rate_limiter.start(settings.rate_limit_sweep_seconds)
    logger.info("[startup] %s ready (env=%s, secure cookies=%s)",
                settings.APP_NAME, settings.env, settings.cookie_secure)


@app.on_event("shutdown")
async def on_shutdown():
    await rate_limiter.stop()
    await close_db()


# REST
app.include_router(auth.router, prefix="/api/v1")
app.include_router(password.router, prefix="/api/v1")
app.include_router(account.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")


@app.get("/healthz")
def healthz():
    return {"ok": True}
