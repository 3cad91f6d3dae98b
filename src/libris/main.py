import asyncio
import logging
from fastapi import FastAPI
from libris.config import settings
from libris.db import init_db
from libris.api.router import router
from libris.worker.reconciler import run_reconciler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=settings.APP_NAME)
app.include_router(router)

@app.get("/health")
async def health():
    return {"ok": True}

@app.on_event("startup")
async def on_startup():
    await init_db()
    if settings.ENABLE_OVERDUE_RECONCILER:
        asyncio.create_task(run_reconciler())
