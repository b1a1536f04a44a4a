"""FastAPI application entry point."""
from fastapi import FastAPI

from azuka.logging_config import configure_logging
from azuka.routers import health, planning


configure_logging()

app = FastAPI(title="Azuka Adaptive Planning API")


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Simple liveness check."""
    return {"status": "ok"}


# Include routers
app.include_router(health.router)
app.include_router(planning.router)
