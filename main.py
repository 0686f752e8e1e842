import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from db_models import IdentifyRequest, FinalResponse, ErrorResponse
from db_setup import SQLiteContactStore
from errors import ConstraintViolation, InvariantViolation, StorageUnavailable
from reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store.init_db()
    yield


def _error(status_code: int, error: str, message: str = None, details=None, headers=None):
    body = ErrorResponse(error=error, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "message": err["msg"],
                "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            }
            for err in exc.errors()
        ]
        return _error(400, "Validation failed", details=details)

    @app.exception_handler(ConstraintViolation)
    async def _constraint_handler(request: Request, exc: ConstraintViolation):
        logger.error("Constraint violation on %s: %s", request.url.path, exc)
        return _error(400, "Database constraint violation", "Invalid data provided")

    @app.exception_handler(StorageUnavailable)
    async def _storage_handler(request: Request, exc: StorageUnavailable):
        logger.error("Storage unavailable on %s: %s", request.url.path, exc)
        return _error(503, "Database error", "An error occurred while processing your request")

    @app.exception_handler(InvariantViolation)
    async def _invariant_handler(request: Request, exc: InvariantViolation):
        logger.exception("Contact linkage invariant violated: %s", exc)
        return _error(500, "Internal server error", "An unexpected error occurred")

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Not Found", "The requested endpoint does not exist")
        return _error(exc.status_code, str(exc.detail), headers=dict(exc.headers or {}))

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return _error(500, "Internal server error", "An unexpected error occurred")


def create_app(store=None) -> FastAPI:
    app = FastAPI(
        title="Contact Identity Reconciliation API",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.store = store or SQLiteContactStore()
    app.state.engine = ReconciliationEngine(app.state.store)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
    )
    register_exception_handlers(app)

    @app.get("/")
    async def root():
        return {"message": "Identity reconciliation API is up"}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": config.SERVICE_NAME,
        }

    # Sync handler: FastAPI runs it in the threadpool so SQLite calls don't block the loop.
    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest):
        return app.state.engine.identify(request.email, request.phoneNumber)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    from rich.logging import RichHandler

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    uvicorn.run(app, host=config.HOST, port=config.PORT)
