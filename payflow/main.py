from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from payflow import config
from payflow.database import Base, engine, QueueBase, queue_engine
from payflow.errors import PaymentCoreError
from payflow.events import EventObserver
from payflow.log_config import setup_logging
from payflow.routes import router
from payflow.worker import PaymentWorker, WorkerPool, build_queue

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    queue = build_queue()
    app.state.payment_queue = queue

    pool = observer = None
    if config.RUN_WORKERS:
        observer = EventObserver(queue.subscribe())
        observer.start()
        pool = WorkerPool(lambda: PaymentWorker(queue))
        pool.start()
    yield
    if pool is not None:
        pool.stop()
    if observer is not None:
        observer.stop()


setup_logging()

app = FastAPI(title="Checkout Payment Service", lifespan=lifespan)

app.include_router(router)


@app.get("/metrics", include_in_schema=False)
def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


Base.metadata.create_all(bind=engine)
QueueBase.metadata.create_all(bind=queue_engine)


@app.exception_handler(PaymentCoreError)
async def payment_core_error_handler(request: Request, exc: PaymentCoreError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
