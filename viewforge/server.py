# server.py
import logging

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from viewforge import __version__  # noqa: E402
from viewforge import models  # noqa: E402,F401  registers tables on Base.metadata
from viewforge.db import Base, engine  # noqa: E402
from viewforge.routes import credits_router, router as workflow_router  # noqa: E402
from viewforge.settings import settings  # noqa: E402
from viewforge.workflow import drain_background_tasks  # noqa: E402

# --- Logging Configuration ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
log = logging.getLogger(__name__)

# --- App Initialization ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Progressive multi-view product image generation.",
    version=__version__,
)

# --- CORS Middleware ---
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Database Startup Event ---
@app.on_event("startup")
async def on_startup():
    """Create database tables on startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Database tables verified/created.")


@app.on_event("shutdown")
async def on_shutdown():
    await drain_background_tasks()
    await engine.dispose()


# =======================================
# ROUTER INCLUSION
# =======================================

app.include_router(workflow_router, prefix=settings.API_PREFIX)
app.include_router(credits_router, prefix=settings.API_PREFIX)


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.PROJECT_NAME, "version": __version__}
