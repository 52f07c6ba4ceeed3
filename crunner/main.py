import logging

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
)
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from crunner.config import get_settings
from crunner.controllers.health import router as health_router
from crunner.controllers.run import router as run_router
from crunner.controllers.ws_run import router as ws_run_router
from crunner.errors import register_exception_handlers
from crunner.lifespan import cleanup_resources, setup_resources
from crunner.middleware import HTTPLogMiddleware

settings = get_settings()

app = FastAPI(title="C Runner API", version="1.0.0")
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors.origins,
    allow_credentials=settings.cors.allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.debug.request:
    logging.getLogger("crunner.http").setLevel(logging.DEBUG)
    app.add_middleware(HTTPLogMiddleware)

logging.getLogger("crunner.ws").setLevel(logging.INFO if settings.debug.websocket else logging.WARNING)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    resources = await setup_resources(get_settings())
    try:
        yield
    finally:
        await cleanup_resources(resources)

app.router.lifespan_context = lifespan

app.include_router(health_router)
app.include_router(run_router)
app.include_router(ws_run_router)

Instrumentator().instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)
