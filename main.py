import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from assignment import AssignmentScheduler
from routes import (
    cod,
    delivery,
    delivery_assignment,
    favorite,
    geocode,
    merchant_order,
    notification,
    order,
    payment,
    product,
    settlement,
    store,
    store_rating,
    upload,
    user,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

scheduler = AssignmentScheduler(config.ASSIGNMENT_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        database.ensure_indexes()
    except PyMongoError as exc:
        logger.error("Could not create indexes: %s", exc)
    if config.ENABLE_ASSIGNMENT_SCHEDULER and database.db is not None:
        scheduler.start()
    yield
    scheduler.stop()


# App and CORS
app = FastAPI(title="Clothing Marketplace API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def timeout_for(path: str) -> float:
    if path.startswith("/api/v1/payment"):
        return config.PAYMENT_TIMEOUT
    if path.startswith("/api/v1/upload"):
        return config.UPLOAD_TIMEOUT
    if path.startswith("/api/v1/settlement"):
        return config.REPORT_TIMEOUT
    return config.STANDARD_TIMEOUT


@app.middleware("http")
async def request_timeout(request: Request, call_next):
    timeout = timeout_for(request.url.path)
    try:
        return await asyncio.wait_for(call_next(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s %s timed out after %ss", request.method, request.url.path, timeout)
        return JSONResponse(status_code=408, content={
            "success": False,
            "message": "Request timeout - The server took too long to respond",
            "error": "TIMEOUT",
        })


# Error envelopes
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid input data", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


for module in (
    user, store, store_rating, product, order, merchant_order, delivery_assignment,
    delivery, cod, payment, settlement, favorite, notification, upload, geocode,
):
    app.include_router(module.router)


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Clothing Marketplace API running"}


@app.get("/test")
def test_database():
    if database.db is None:
        return {"backend": "ok", "database": "missing", "collections": []}
    try:
        return {"backend": "ok", "database": "ok", "collections": database.db.list_collection_names()}
    except PyMongoError as e:
        return {"backend": "ok", "database": f"error: {e}"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
