import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fatoora.app.api.errors import register_exception_handlers
from fatoora.app.api.v1.api import api_router
from fatoora.app.core.config import settings
from fatoora.app.core.database import init_db

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Fatoora ZATCA Compliance Engine", lifespan=lifespan)

register_exception_handlers(app)

app.include_router(api_router)
