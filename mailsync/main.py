import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailsync.config import settings
from mailsync.api.auth.routes import router as auth_router
from mailsync.api.email.routes import router as email_router

# Scheduler for Sync
from mailsync.core.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    yield
    stop_scheduler()

app = FastAPI(lifespan=lifespan)

# Routers
app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(email_router, prefix="/email", tags=["Email"])

@app.get("/ping")
def ping():
    return {"message": "pong"}
