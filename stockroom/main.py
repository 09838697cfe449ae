from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stockroom.core.config import settings
from stockroom.core.errors import StockroomError
from stockroom.core.logging import get_logger, setup_logging
from stockroom.db.session import init_db
from stockroom.api import (
    audit, dashboard, movements, payments, products, quotations, request_periods,
    requests, suppliers,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}")
    init_db()
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StockroomError)
async def stockroom_error_handler(request: Request, exc: StockroomError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} refused ({exc.code}): {exc.message}")
    headers = None
    if "retry_after" in exc.details:
        headers = {"Retry-After": str(max(1, round(exc.details["retry_after"])))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


for module in (products, suppliers, requests, quotations, movements, dashboard, payments, request_periods, audit):
    app.include_router(module.router)


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.APP_NAME, "version": settings.APP_VERSION}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
