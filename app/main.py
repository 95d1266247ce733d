"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.monitoring import router as monitoring_router
from app.api.upload import router as upload_router
from app.api.webhooks import router as webhooks_router
from app.config import get_settings
from app.database import Base, engine
from app.exceptions import UploadError
from app.models import (  # noqa: F401 - Import to register models
    Lead,
    ProcessingBatch,
    UploadChunk,
    UploadJob,
    UploadProgressEvent,
    ValidatedRow,
    Webhook,
)
from app.tasks.scheduler import ProcessingScheduler

settings = get_settings()

# Configure logging
handlers = [logging.StreamHandler()]  # Console output
if settings.log_file:
    handlers.append(logging.FileHandler(settings.log_file))  # File output

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=handlers,
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables and run the processing scheduler for the app's lifetime."""
    Base.metadata.create_all(bind=engine)
    scheduler = ProcessingScheduler()
    scheduler.start()
    app.state.scheduler = scheduler
    yield
    scheduler.stop()


app = FastAPI(
    title="Leads Importer",
    description="Chunked CSV uploads imported into workspace leads in batches",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    if exc.status_code >= 500:
        logger.error(f"💥 {exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.warning(f"⚠️ {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(upload_router)
app.include_router(monitoring_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
