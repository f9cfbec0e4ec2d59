from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI

from autoscaler.config import get_settings
from autoscaler.database import init_db
from autoscaler.logging_config import configure_logging
from autoscaler.routers import jobs, provision, runners
from autoscaler.routers.deps import get_manager
from autoscaler.schemas import PoolStatsRead
from autoscaler.services.pool_manager import PoolManager

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from autoscaler.database import engine
    from autoscaler.services.pool_manager import get_pool_manager

    configure_logging(settings.log_level)
    await init_db()
    pool_manager = get_pool_manager()
    await pool_manager.start()
    yield
    await pool_manager.stop()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Autoscaler for ephemeral self-hosted CI runners",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(runners.router)
app.include_router(jobs.router)
app.include_router(provision.router)


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}


@app.get("/api/stats", response_model=PoolStatsRead)
async def stats(manager: PoolManager = Depends(get_manager)):
    return PoolStatsRead.model_validate(manager.stats, from_attributes=True)


def run():
    configure_logging(settings.log_level)
    config = uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())
    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
