import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from worktally.auth.session import log_auth_event, on_auth_state_change
from worktally.config import settings
from worktally.database import create_all_tables
from worktally.middleware.exceptions import register_exception_handlers
from worktally.middleware.tenant import TenantMiddleware
from worktally.routers import auth, health, onboarding, organizations, realtime
from worktally.utils.redis_pool import close_redis

logger = logging.getLogger("worktally")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    if settings.auto_create_tables:
        await create_all_tables()
    remove_listener = on_auth_state_change(log_auth_event)
    logger.info(f"WorkTally started ({settings.environment})")
    try:
        yield
    finally:
        remove_listener()
        await close_redis()


app = FastAPI(
    title="WorkTally",
    description="Workforce time tracking: organization onboarding and provisioning API",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Tenant context (innermost - processes request data)
app.add_middleware(TenantMiddleware)

# ── Routers ──────────────────────────────────────────────────
# Public (no tenant context needed)
app.include_router(health.router)
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(onboarding.router, prefix="/api/onboarding", tags=["onboarding"])

# Tenant-scoped (require organization_id in JWT)
app.include_router(organizations.router, prefix="/api/organizations", tags=["organizations"])
app.include_router(realtime.router, prefix="/api/realtime", tags=["realtime"])
