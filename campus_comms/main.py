from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from campus_comms.config import settings
from campus_comms.core.errors import MessagingError
from campus_comms.db import Base, engine
from campus_comms.routers import broadcasts, messages, monitor, notifications, scheduled
from campus_comms.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    yield
    if settings.enable_scheduler:
        stop_scheduler()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.warning('request_failed path=%s error=%s detail=%s', request.url.path, exc.error_type, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('campus_comms.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


@app.get('/health')
def health():
    return {'ok': True, 'app': settings.app_name, 'env': settings.app_env}


app.include_router(messages.router)
app.include_router(broadcasts.router)
app.include_router(scheduled.router)
app.include_router(notifications.router)
app.include_router(monitor.router)
