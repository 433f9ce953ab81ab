from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from email_queue import __version__
from email_queue.config import Settings, settings
from email_queue.database import SessionLocal, engine, init_db
from email_queue.exceptions import NotFoundError, PersistenceError, TransportUnavailable, ValidationError
from email_queue.models import EmailStatusEnum
from email_queue.services.email_service import enqueue_email, format_errors
from email_queue.services.status import config_status, get_status
from email_queue.store import MessageStore
from email_queue.transport import Transport, build_transport
from email_queue.utils.logger import clear_request_id, get_logger, set_request_id
from email_queue.worker import drain_queue

logger = get_logger("app")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Client-Info, Apikey, X-Request-ID",
}


def dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_transport(request: Request) -> Optional[Transport]:
    return request.app.state.transport


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def create_app(
    config: Settings = settings,
    store: Optional[MessageStore] = None,
    transport_factory: Callable[[Settings], Optional[Transport]] = build_transport,
) -> FastAPI:
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_store:
            init_db(engine)
        logger.info(
            "service_started",
            extra={"transport": config.email_transport, "transport_configured": app.state.transport is not None},
        )
        yield
        if app.state.transport is not None:
            await app.state.transport.aclose()
        logger.info("service_stopped")

    app = FastAPI(
        title="Email Queue Service",
        description="Durable transactional email queue with retrying delivery",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.store = store or MessageStore(SessionLocal)
    app.state.transport = transport_factory(config)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            if request.method == "OPTIONS":
                return Response(status_code=200, headers=CORS_HEADERS)

            logger.info("request_started", extra={"method": request.method, "path": request.url.path})
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error("request_failed", extra={"method": request.method, "path": request.url.path, "error": str(e)})
                raise
            response.headers.update(CORS_HEADERS)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                extra={"method": request.method, "path": request.url.path, "status_code": response.status_code},
            )
            return response
        finally:
            clear_request_id()

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": format_errors(exc.errors())})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error("persistence_error", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "email_queue"}

    @app.post("/send-email")
    async def send_email_endpoint(
        request: Request,
        store: MessageStore = Depends(get_store),
        transport: Optional[Transport] = Depends(get_transport),
        config: Settings = Depends(get_settings),
    ):
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON")

        result = await enqueue_email(payload, store, transport, config)
        logger.info("enqueue_accepted", extra={"email_id": result.email_id, "delivered": result.delivered})
        return dump(result)

    @app.get("/send-email")
    async def send_email_actions(
        action: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        store: MessageStore = Depends(get_store),
        transport: Optional[Transport] = Depends(get_transport),
        config: Settings = Depends(get_settings),
    ):
        if action == "status":
            return dump(config_status(config, transport))

        if action == "process":
            if transport is None:
                return JSONResponse(status_code=500, content={"success": False, "message": "transport not configured"})
            try:
                summary = await drain_queue(store, transport, limit or config.drain_batch_size)
            except TransportUnavailable as e:
                return JSONResponse(status_code=503, content={"success": False, "message": str(e)})
            message = "Email processing completed" if summary.total else "No pending emails to process"
            return {"success": True, "message": message, **summary.model_dump()}

        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid action parameter"})

    @app.api_route("/send-email", methods=["PUT", "PATCH", "DELETE"])
    async def send_email_method_not_allowed():
        return JSONResponse(status_code=405, content={"success": False, "message": "Method not allowed"})

    @app.get("/emails")
    async def list_emails(
        status: Optional[EmailStatusEnum] = None,
        limit: int = Query(default=100, ge=1, le=1000),
        store: MessageStore = Depends(get_store),
    ):
        records = store.list_emails(status=status, limit=limit)
        return {"success": True, "data": [dump(r) for r in records]}

    @app.get("/emails/{email_id}")
    async def email_status(email_id: str, store: MessageStore = Depends(get_store)):
        return {"success": True, "data": dump(get_status(store, email_id))}

    @app.get("/emails/{email_id}/logs")
    async def email_logs(email_id: str, store: MessageStore = Depends(get_store)):
        return {"success": True, "data": [dump(entry) for entry in store.list_logs(email_id)]}

    return app


app = create_app()
