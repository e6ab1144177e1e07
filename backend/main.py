import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from chiccanto.api.endpoints import auth, fulfill, redeem, token
from chiccanto.core.database import Base, engine
from chiccanto.core.errors import ApiError
from chiccanto.core.settings import settings
from chiccanto.models import kv_entry  # noqa: F401  registers the kv_entries table

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="ChicCanto API")

# Configure CORS
origins = settings.resolved_cors_origins()
if origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )


@app.on_event("startup")
def startup() -> None:
    if settings.is_production and not (settings.fulfill_key and settings.fulfill_session_secret):
        logger.warning("startup.fulfillment_unconfigured")
    if settings.kv_backend == "sql" and settings.db_auto_create:
        Base.metadata.create_all(bind=engine)
    logger.info("startup.ready environment=%s kv_backend=%s", settings.environment, settings.kv_backend)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error("api.error path=%s status=%s error=%s", request.url.path, exc.status_code, exc.error)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers or None)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"ok": False, "error": "Invalid JSON body."})


@app.middleware("http")
async def no_store_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Cache-Control", "no-store")
    return response


app.include_router(auth.router, tags=["auth"])
app.include_router(fulfill.router, tags=["fulfill"])
app.include_router(redeem.router, tags=["redeem"])
app.include_router(token.router, tags=["token"])


@app.get("/health")
async def health_check():
    return {"ok": True, "status": "healthy"}
