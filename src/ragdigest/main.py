import logging
import os

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ragdigest.api.digest import router as digest_router
from ragdigest.logging_config import configure_logging

configure_logging(os.getenv("LOG_LEVEL", "INFO"))

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Document Digest API")
app.include_router(digest_router)


@app.get("/", response_class=PlainTextResponse)
def read_root() -> str:
    """Healthcheck endpoint for the service."""
    return "ok"


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"
