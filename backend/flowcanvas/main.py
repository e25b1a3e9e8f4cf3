import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .api.routes import api_router
from .config import log_level
from .services.workflow_session import shutdown_session_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: startup and shutdown events.
    """
    # Startup
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting FlowCanvas application")

    yield

    # Shutdown: cancel in-flight runs and write pending snapshots
    await shutdown_session_manager()
    logger.info("FlowCanvas application shutdown complete")

app = FastAPI(
    title="FlowCanvas",
    description="FlowCanvas runs visual AI-service pipelines: typed nodes wired into a graph, with each node's result propagated to the nodes downstream of it.",
    lifespan=lifespan
)

# Use regex to allow all Vercel domains and localhost
app.add_middleware(
    CORSMiddleware,
    allow_origins=[],  # Empty list - use regex instead
    allow_origin_regex=r"^https:\/\/.*\.vercel\.app$|^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(api_router)
