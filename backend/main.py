from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import time

from config import Config
from routes import robinhood_router
from utils.logger import configure_logging, get_logger

# Configure logging for the entire application
configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Robinhood Connector API",
    description="Robinhood login (MFA / device verification) and aggregated portfolio data",
    version="1.0.0"
)


# Add simple timing middleware for request duration logging
@app.middleware("http")
async def log_requests(request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = (time.time() - start_time) * 1000

    if Config.ENABLE_TIMING_LOGS:
        logger.info(
            f"{request.method} {request.url.path} - {response.status_code} ({duration:.0f}ms)",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": round(duration, 2),
                "type": "http_request"
            }
        )
    return response

logger.info("Robinhood Connector API initialized")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(robinhood_router)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the shared Robinhood HTTP client and database pool"""
    from modules.robinhood_tools import get_robinhood_tools
    from database import dispose_db

    if get_robinhood_tools.cache_info().currsize:
        await get_robinhood_tools().aclose()
    await dispose_db()


@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Robinhood Connector API", "status": "running"}


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Robinhood Connector API starting on {Config.API_HOST}:{Config.API_PORT}")
    logger.info(f"API Documentation: http://localhost:{Config.API_PORT}/docs")
    uvicorn.run(
        app,
        host=Config.API_HOST,
        port=Config.API_PORT,
        timeout_keep_alive=5,
        log_level="info"
    )
