import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from .db import build_engine, check_db_connection, create_db_and_tables
from .emergency_routes import router as emergency_router
from .errors import FestivalError, InfrastructureError
from .order_routes import router as order_router
from .services import Services, build_services, get_services
from .settings import Settings, settings as default_settings
from .stock_routes import router as stock_router
from .ws_routes import router as ws_router

logging.basicConfig(
    level=default_settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """HTTP middleware to log all incoming requests for debugging."""
    async def dispatch(self, request: Request, call_next):
        client_host = request.client.host if request.client else "unknown"
        logger.debug(
            f"Request: {request.method} {request.url.path} "
            f"from {client_host} "
            f"(query: {dict(request.query_params)})"
        )

        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Error processing request {request.method} {request.url.path}: {e}", exc_info=True)
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    services: Services = app.state.services
    create_db_and_tables(services.engine)

    listener = None
    if services.relay is not None:
        listener = asyncio.create_task(services.relay.listen(services.broadcaster.deliver_local))
    yield
    if listener is not None:
        listener.cancel()
    logger.info("Application stopped")


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    settings = settings or default_settings
    engine = engine or build_engine(settings)

    app = FastAPI(
        title="Festival Order API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.services = build_services(settings, engine)

    # Parse CORS origins from environment (comma-separated)
    cors_origins_list = [
        origin.strip()
        for origin in settings.cors_origins.split(",")
        if origin.strip()
    ]
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FestivalError)
    async def festival_error_handler(request: Request, exc: FestivalError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=True)
        error = InfrastructureError("Database unavailable, please try again")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"detail": jsonable_encoder(exc.errors()), "kind": "validation"},
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/health/db")
    def health_db(services: Services = Depends(get_services)) -> dict:
        """Check database connection and report live socket counts."""
        try:
            check_db_connection(services.engine)
        except Exception as e:
            raise HTTPException(status_code=503, detail=f"Database error: {e}")
        return {
            "status": "ok",
            "database": "connected",
            "realtime": services.registry.stats(),
        }

    app.include_router(order_router, prefix="/orders", tags=["Orders"])
    app.include_router(stock_router, prefix="/stock", tags=["Stock"])
    app.include_router(emergency_router, prefix="/emergency", tags=["Emergency"])
    app.include_router(ws_router)
    return app


app = create_app()
