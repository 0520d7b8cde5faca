from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from database import build_engine, build_session_factory, init_db
from errors import IdentityError
from logging_config import configure_logging
from resolver import IdentityResolver, KeyedLocks, Observation
from schemas import ErrorResponse, IdentifyRequest, IdentifyResponse
from store import ContactStore

logger = structlog.get_logger(__name__)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_resolver(request: Request, db: Session = Depends(get_db)):
    return IdentityResolver(ContactStore(db), locks=request.app.state.resolution_locks)


def _error(status_code, error, message=None):
    content = ErrorResponse(error=error, message=message).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=content)


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for err in exc.errors():
        cause = (err.get("ctx") or {}).get("error")
        messages.append(str(cause) if cause is not None else err["msg"])
    return ", ".join(messages)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request data", _validation_message(exc))

    @app.exception_handler(IdentityError)
    async def _resolution_failed(request: Request, exc: IdentityError):
        logger.error("resolution_failed", code=exc.code, error=exc.message, exc_info=exc)
        return _error(500, "Internal server error")

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"status": "error", "message": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    engine = build_engine(settings.database_url, echo=settings.echo_sql)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        logger.info("database_ready", database_url=engine.url.render_as_string(hide_password=True))
        yield
        engine.dispose()

    # FastAPI instance
    app = FastAPI(title="Identity Reconciliation", lifespan=lifespan)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.resolution_locks = KeyedLocks() if settings.serialize_resolutions else None
    register_exception_handlers(app)

    @app.get("/", response_class=PlainTextResponse)
    def health():
        return "Identity reconciliation server is running"

    @app.post("/identify", response_model=IdentifyResponse)
    @app.post("/api/identify", response_model=IdentifyResponse)
    def identify_contact(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
        observation = Observation(email=request.email, phone_number=request.phoneNumber)
        return IdentifyResponse(contact=resolver.resolve(observation))

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
