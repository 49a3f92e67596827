from fastapi import FastAPI
from sqlmodel import Session
from fastapi.exceptions import RequestValidationError
from streamvault.api.envelope import streamvault_exception_handler, validation_exception_handler
from streamvault.api.v1 import accounts, health, jobs, stream, upload
from streamvault.core.config import settings
from streamvault.core.db import engine, init_db
from streamvault.core.errors import StreamVaultException
from streamvault.core.logging_config import configure_logging
from streamvault.services.account_registry import account_registry
import logging
import os

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.PROJECT_NAME)
app.add_exception_handler(StreamVaultException, streamvault_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()
    for path in (settings.UPLOAD_SCRATCH_DIR, settings.TRANSCODE_DIR, settings.SEGMENT_CACHE_DIR, settings.PREVIEW_DIR):
        os.makedirs(path, exist_ok=True)
    with Session(engine) as session:
        account_registry.load(session)
    logger.info(f"{settings.PROJECT_NAME} api started")

@app.get("/")
def read_root():
    return {"message": "Welcome to StreamVault API"}

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(upload.router, prefix="/upload", tags=["upload"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(stream.router, prefix="/stream", tags=["stream"])
app.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
