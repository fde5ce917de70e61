import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import load_settings, parse_origins
from .database import close_pool, init_db, init_pool

# .env must be loaded before the CORS allow-list is read below
load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    settings = load_settings()
    logger.info("[Niesty] Starting server on port %s (%s)", settings.port, settings.app_env)

    # Initialize database
    await init_pool(settings.database_url)
    await init_db()
    logger.info("[Niesty] Database initialized")

    yield

    # Cleanup
    await close_pool()
    logger.info("[Niesty] Server shutdown complete")


app = FastAPI(
    title="Niesty API",
    description="Creator and business sponsorship marketplace: deals, negotiation, delivery review",
    version="0.1.0",
    lifespan=lifespan,
)


def add_cors(app: FastAPI) -> None:
    """Install the CORS origin allow-list from ALLOWED_ORIGINS."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=parse_origins(os.getenv("ALLOWED_ORIGINS")),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


add_cors(app)

from .routes import auth_router, deals_router

app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(deals_router, prefix="/api/deals", tags=["deals"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "niesty"}
