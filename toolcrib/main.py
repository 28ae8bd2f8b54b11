import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from toolcrib.config import settings
from toolcrib.db import create_db_and_tables
from toolcrib.error import ToolcribError
from toolcrib.routers import (
    activity,
    auth,
    categories,
    companies,
    imports,
    items,
    notifications,
    stock_requests,
    tech_inventory,
    trucks,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()  # ✅ startup
    yield
    logger.info("toolcrib shut down")


app = FastAPI(title="Toolcrib - Field Tool Inventory", lifespan=lifespan)

app.include_router(auth.router)
app.include_router(companies.router)
app.include_router(notifications.router)
app.include_router(trucks.router)
app.include_router(categories.router)
app.include_router(items.router)
app.include_router(imports.router)
app.include_router(stock_requests.router)
app.include_router(tech_inventory.router)
app.include_router(activity.router)

app.mount(settings.image_base_url, StaticFiles(directory=settings.image_dir, check_dir=False), name="images")


@app.get("/health")
def health():
    return {"ok": True}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": {"code": "VALIDATION_ERROR", "message": "Request validation failed", "errors": jsonable_encoder(exc.errors())}},
    )


@app.exception_handler(ToolcribError)
async def toolcrib_exception_handler(request: Request, exc: ToolcribError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})
