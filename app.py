from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from routers.chat_rooms import chat_rooms_router
from routers.iframe_check import iframe_check_router
from constants import CORS_ALLOWED_ORIGINS, LOG_LEVEL, LOG_FILE, PROXY_TIMEOUT_SECONDS
from logging_config import get_logger, setup_logging
import httpx

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One pooled client for all upstream fetches made by the embedding proxy
    app.state.http_client = httpx.AsyncClient(timeout=PROXY_TIMEOUT_SECONDS)
    logger.info("Upstream HTTP client started")
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        logger.info("Upstream HTTP client closed")


app = FastAPI(title="ryOS services", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials="*" not in CORS_ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request"})


app.include_router(chat_rooms_router)
app.include_router(iframe_check_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


logger.info("FastAPI application initialized")
