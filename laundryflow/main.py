# laundryflow/main.py
import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from laundryflow.core.config import settings
from laundryflow.core.errors import LifecycleError
from laundryflow.deps import get_repo
from laundryflow.routers import assignments as assignments_router
from laundryflow.routers import orders as orders_router
from laundryflow.services.outbox_worker import run_outbox_loop

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    repo = get_repo()
    if hasattr(repo, "ensure_indexes"):
        await repo.ensure_indexes()

    stop = asyncio.Event()
    worker = None
    if settings.run_outbox_worker:
        worker = asyncio.create_task(run_outbox_loop(repo, stop))
        logger.info("Outbox worker started (target=%s)", settings.notify_url)

    yield

    stop.set()
    if worker is not None:
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)


app = FastAPI(lifespan=lifespan, title="Laundryflow Order Lifecycle API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

app.include_router(orders_router.router)
app.include_router(assignments_router.router)

@app.get("/health")
def health():
    return {"ok": True}
