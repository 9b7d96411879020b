"""
Define application startup and shutdown procedures
"""

import re
from contextlib import asynccontextmanager
from fastapi import FastAPI

from api.files.search_store import OpenSearchMetadataStore
from api.files.services import FileServices
from api.files.storage import S3StorageAdapter
from api.files.store import SQLMetadataStore
from core.config import Settings, get_settings
from core.db import create_db_and_tables, get_engine, reset_engine
from core.opensearch import get_opensearch_client, init_indexes
from core.logger import logger


def _log_setting(key: str, value):
    """Log a setting, masking sensitive values like passwords and secrets"""
    if ("PASSWORD" in key or "SECRET" in key) and value is not None:
        logger.info("  %s: %s", key, "*****")
    elif "SQLALCHEMY_DATABASE_URI" in key and value is not None:
        # Mask password in database URI if present
        masked_value = re.sub(r"://(.*?):(.*?)@", r"://\1:*****@", value)
        logger.info("  %s: %s", key, masked_value)
    else:
        logger.info("  %s: %s", key, value)


def log_settings(settings: Settings) -> None:
    logger.info("Configuration Settings:")

    # Log computed fields first (they don't appear in vars())
    computed_fields = {
        "SQLALCHEMY_DATABASE_URI": settings.SQLALCHEMY_DATABASE_URI,
        "OPENSEARCH_HOST": settings.OPENSEARCH_HOST,
        "OPENSEARCH_PORT": settings.OPENSEARCH_PORT,
        "OPENSEARCH_USER": settings.OPENSEARCH_USER,
        "OPENSEARCH_PASSWORD": settings.OPENSEARCH_PASSWORD,
    }
    for key, value in computed_fields.items():
        _log_setting(key, value)

    # Log remaining settings
    for key, value in vars(settings).items():
        _log_setting(key, value)


def build_file_services(settings: Settings) -> tuple[FileServices, object]:
    """
    Wire the storage adapter and the configured metadata store.
    Returns the services and the OpenSearch client (None for the SQL backend).
    """
    storage = S3StorageAdapter.from_settings(settings)

    backend = settings.METADATA_BACKEND.strip().lower()
    client = None
    if backend == "opensearch":
        client = get_opensearch_client(settings)
        if client is None:
            raise RuntimeError("METADATA_BACKEND is opensearch but OPENSEARCH_HOST is not set")
        logger.info("Initializing OpenSearch indexes...")
        init_indexes(client, settings.OPENSEARCH_INDEX)
        store = OpenSearchMetadataStore(client, settings.OPENSEARCH_INDEX)
    elif backend == "sql":
        logger.info("Initializing database...")
        engine = get_engine()
        create_db_and_tables(engine)
        store = SQLMetadataStore(engine)
    else:
        raise RuntimeError(f"Unknown METADATA_BACKEND '{settings.METADATA_BACKEND}'")

    logger.info(
        "File services ready (bucket=%s, metadata=%s)", settings.STORAGE_BUCKET, backend
    )
    return FileServices(storage=storage, store=store, settings=settings), client


# Handle startup/shutdown tasks
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("In lifespan...starting up")

    settings = get_settings()
    log_settings(settings)

    services, client = build_file_services(settings)
    app.state.file_services = services

    logger.info("In lifespan...yield")
    try:
        yield
    finally:
        # Shutdown
        logger.info("In lifespan...shutting down")
        app.state.file_services = None
        services.close()
        if client is not None:
            client.close()
        reset_engine()
