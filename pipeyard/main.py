import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pipeyard.config import settings
from pipeyard.db import SessionLocal
from pipeyard.error_handlers import (
    engine_error_handler,
    http_exception_handler,
    integrity_error_handler,
    validation_exception_handler,
)
from pipeyard.errors import EngineError
from pipeyard.logging_config import setup_logging
from pipeyard.routers import customer, management
from pipeyard.scheduler import scheduler
from pipeyard.security.identity import install_identity_middleware

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.scheduler_enabled:
        scheduler.start()
        logger.info('Notification drain scheduled every %s seconds', settings.queue_drain_interval_seconds)
    yield
    if scheduler.running:
        scheduler.shutdown(wait=False)


app = FastAPI(title='Pipeyard Storage Lifecycle', lifespan=lifespan)
app.state.session_factory = SessionLocal

app.add_exception_handler(EngineError, engine_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(IntegrityError, integrity_error_handler)

install_identity_middleware(app)

app.include_router(customer.router)
app.include_router(management.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
