from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from contextlib import asynccontextmanager
from jimeng_api.core.config import settings
from jimeng_api.core.logging import setup_logging
from jimeng_api.core.exceptions import (
    JimengAPIException, jimeng_exception_handler, general_exception_handler
)
from jimeng_api.core.rate_limiting import limiter, custom_rate_limit_exceeded_handler
from jimeng_api.core.http_client import get_upstream_client, close_upstream_client
from jimeng_api.services.generation.orchestrator import reset_generation_orchestrator
from jimeng_api.api.v1.api import api_router, token_router

# Set up logging
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    # Startup
    app.state.upstream_client = await get_upstream_client()

    yield

    # Shutdown
    reset_generation_orchestrator()
    await close_upstream_client()


app = FastAPI(
    title="Jimeng API",
    description="OpenAI-compatible image and video generation gateway",
    version="1.0.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan
)

# Add rate limiter to app
app.state.limiter = limiter

# Exception handlers
app.add_exception_handler(RateLimitExceeded, custom_rate_limit_exceeded_handler)
app.add_exception_handler(JimengAPIException, jimeng_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(api_router, prefix=settings.API_V1_STR)
app.include_router(token_router)


@app.get("/")
async def root():
    return {"message": "Jimeng API is running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def run():
    import uvicorn
    uvicorn.run("jimeng_api.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
