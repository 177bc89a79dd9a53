from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from werkverdeling.api.routes import router as api_router
from werkverdeling.config.settings import get_settings
from werkverdeling.storage.database import init_db
from werkverdeling.utils.logging_config import setup_logging


# Setup logging
logger = setup_logging()
settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    description="Fair, constraint-respecting work distribution with incremental repair",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize database on startup
@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.app_name}...")
    init_db()
    logger.info("Database initialized")
    logger.info(f"Exact solver: {settings.exact_solver} (enabled={settings.exact_enabled}, max edges={settings.exact_max_edges})")
    logger.info(f"Max load mode: {settings.max_load_mode}, fairness weight: {settings.fairness_weight}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info(f"Shutting down {settings.app_name}...")

app.include_router(api_router, prefix="/api/v1", tags=["planning"])


@app.get("/health", tags=["health"])
def health_check():
    """Health check endpoint for monitoring and load balancers."""
    return {"status": "ok", "app": settings.app_name, "version": "1.0.0"}
