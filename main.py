import os
import sys
import logging
from fastapi import FastAPI
from contextlib import asynccontextmanager

CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
if CURRENT_DIR not in sys.path:
    sys.path.insert(0, CURRENT_DIR)

from app.state import SessionController
from routes import api

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Creates the session controller and tears the session down on exit."""
    app.state.controller = SessionController()
    logger.info("Session controller ready")
    try:
        yield
    finally:
        await app.state.controller.shutdown()


app = FastAPI(
    title="Peer Screen Sharing Service",
    version="1.0.0",
    lifespan=lifespan
)

# --- Routers ---
app.include_router(api.router, tags=["Peer Screen Sharing"])

# Same routes behind the reverse-proxy prefix
app.include_router(api.router, prefix="/api/v1/peerscreen", tags=["Peer Screen Sharing Proxy"])


# --- Run with uvicorn ---
if __name__ == "__main__":
    import uvicorn

    host = os.getenv("SERVICE_HOST", "0.0.0.0")
    port = int(os.getenv("SERVICE_PORT", "8104"))

    uvicorn.run("main:app", host=host, port=port, reload=False)
