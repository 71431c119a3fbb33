from contextlib import asynccontextmanager
from fastapi import FastAPI
from .config import settings
from .logging import setup_logging
from .api.routes import router as api_router
from .services.container import build_container
from .services.scheduler import schedule_warm_job

@asynccontextmanager
async def lifespan(app: FastAPI):
    services = getattr(app.state, "services", None) or build_container(settings)
    app.state.services = services
    sched = schedule_warm_job(services) if services.settings.warm_schedule_enabled else None
    try:
        yield
    finally:
        if sched is not None:
            sched.shutdown(wait=False)

setup_logging()
app = FastAPI(title="market-metrics-service", lifespan=lifespan)
app.include_router(api_router)
