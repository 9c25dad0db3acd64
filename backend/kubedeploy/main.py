import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from kubedeploy import __version__
from kubedeploy.api.router import api_router
from kubedeploy.config import get_settings
from kubedeploy.core.logging import setup_logging
from kubedeploy.core.request_context import request_id_var
from kubedeploy.exceptions import register_exception_handlers

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "kubedeploy.startup",
        environment=settings.environment or None,
        deploy_mode=settings.deploy_mode,
        ingress=settings.ingress_name,
        in_cluster=settings.in_cluster,
    )
    yield
    logger.info("kubedeploy.shutdown")


# Logging is configured as early as possible, before uvicorn adds its own
setup_logging()

app = FastAPI(
    title="kubedeploy",
    description="Reconciles application descriptors into Kubernetes resources",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
